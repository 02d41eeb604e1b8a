from django.db.models import F, Q
from rest_framework import generics, mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated

from common.access import UUID_LOOKUP_REGEX, ServiceContextMixin
from common.audit import AuditedMutationMixin
from common.permissions import RoleCapabilityPermission
from common.responses import EnvelopeResponseMixin, success_response
from common.utils import uuid_query_param
from inventory.models import BranchStock, Product, ProductImei, StockTransfer
from inventory.serializers import (
    BranchStockSerializer,
    ImeiRegistrationSerializer,
    ProductImeiSerializer,
    ProductSerializer,
    StockLevelSerializer,
    StockTransferCreateSerializer,
    StockTransferSerializer,
    TransferCancelSerializer,
)
from inventory.services import (
    cancel_transfer,
    complete_transfer,
    register_imei,
    set_stock_level,
    transfer_stock,
)


class ProductViewSet(EnvelopeResponseMixin, AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.all()
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    http_method_names = ["get", "post", "put", "patch", "head", "options"]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "create": "catalog.manage",
        "update": "catalog.manage",
        "partial_update": "catalog.manage",
    }
    audit_entity = "product"

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        search = params.get("search")
        if search:
            queryset = queryset.filter(Q(name__icontains=search) | Q(sku__icontains=search))
        if params.get("category"):
            queryset = queryset.filter(category=params["category"])
        if params.get("brand"):
            queryset = queryset.filter(brand=params["brand"])
        if params.get("inventoryType"):
            queryset = queryset.filter(inventory_type=params["inventoryType"])
        return queryset


class BranchStockView(ServiceContextMixin, generics.GenericAPIView):
    """Stock ledger of a branch: list entries (GET) or set an on-hand level (PUT)."""

    queryset = BranchStock.objects.select_related("branch", "product")
    serializer_class = BranchStockSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.view", "put": "stock.manage"}

    def get_queryset(self):
        policy = self.get_policy()
        params = self.request.query_params
        queryset = policy.scope(super().get_queryset()).order_by("product__name")
        branch_id = uuid_query_param(params, "branchId")
        if branch_id:
            queryset = queryset.filter(branch_id=policy.resolve_branch_id(branch_id))
        product_id = uuid_query_param(params, "productId")
        if product_id:
            queryset = queryset.filter(product_id=product_id)
        if params.get("low_stock") in ("1", "true", "True"):
            queryset = queryset.filter(quantity__lte=F("reserved_quantity") + F("min_stock_level"))
        return queryset

    def get(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    def put(self, request):
        serializer = StockLevelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entry = set_stock_level(
            self.get_policy(),
            self.get_actor(),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(data=BranchStockSerializer(entry).data, message="Stock updated successfully")


class ProductImeiViewSet(ServiceContextMixin, EnvelopeResponseMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = ProductImei.objects.select_related("product", "branch")
    serializer_class = ProductImeiSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "stock.view", "retrieve": "stock.view", "create": "stock.manage"}

    def get_queryset(self):
        policy = self.get_policy()
        params = self.request.query_params
        queryset = policy.scope(super().get_queryset()).order_by("-created_at")
        branch_id = uuid_query_param(params, "branchId")
        if branch_id:
            queryset = queryset.filter(branch_id=policy.resolve_branch_id(branch_id))
        product_id = uuid_query_param(params, "productId")
        if product_id:
            queryset = queryset.filter(product_id=product_id)
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("imei"):
            queryset = queryset.filter(imei=params["imei"])
        return queryset

    def create(self, request):
        serializer = ImeiRegistrationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        record = register_imei(
            self.get_policy(),
            self.get_actor(),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data=ProductImeiSerializer(record).data,
            message="IMEI added successfully",
            status_code=status.HTTP_201_CREATED,
        )


class StockTransferViewSet(ServiceContextMixin, EnvelopeResponseMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = StockTransfer.objects.select_related("from_branch", "to_branch", "product", "requested_by", "approved_by")
    serializer_class = StockTransferSerializer
    lookup_value_regex = UUID_LOOKUP_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.view",
        "retrieve": "stock.view",
        "create": "stock.transfer",
        "complete": "stock.transfer.complete",
        "cancel": "stock.transfer.complete",
    }

    def get_queryset(self):
        queryset = self.get_policy().scope_any(super().get_queryset(), ["from_branch_id", "to_branch_id"])
        if self.request.query_params.get("status"):
            queryset = queryset.filter(status=self.request.query_params["status"])
        return queryset

    def create(self, request):
        serializer = StockTransferCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transfer = transfer_stock(
            self.get_policy(),
            self.get_actor(),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data={
                "transferId": str(transfer.id),
                "transferNumber": transfer.transfer_number,
                "transfer": StockTransferSerializer(transfer).data,
            },
            message="Stock transfer initiated successfully",
            status_code=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["put"], url_path="complete")
    def complete(self, request, pk=None):
        transfer = complete_transfer(self.get_policy(), self.get_actor(), pk, request_id=self.get_request_id())
        return success_response(data=StockTransferSerializer(transfer).data, message="Stock transfer completed successfully")

    @action(detail=True, methods=["put"], url_path="cancel")
    def cancel(self, request, pk=None):
        serializer = TransferCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transfer = cancel_transfer(
            self.get_policy(),
            self.get_actor(),
            pk,
            reason=serializer.validated_data.get("reason"),
            request_id=self.get_request_id(),
        )
        return success_response(data=StockTransferSerializer(transfer).data, message="Stock transfer cancelled")
