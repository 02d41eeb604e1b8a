import uuid

from django.db.models import Q
from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import IsAuthenticated

from common.access import NO_BRANCH_MESSAGE, UUID_LOOKUP_REGEX, ServiceContextMixin
from common.audit import AuditedMutationMixin
from common.permissions import RoleCapabilityPermission
from common.responses import EnvelopeResponseMixin, success_response
from common.utils import uuid_query_param
from sales.models import Customer, PreOrder, Refund, Sale
from sales.serializers import (
    CustomerSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    PreOrderCancelSerializer,
    PreOrderConvertSerializer,
    PreOrderCreateSerializer,
    PreOrderSerializer,
    PreOrderUpdateSerializer,
    RefundCreateSerializer,
    RefundProcessSerializer,
    RefundSerializer,
    SaleCancelSerializer,
    SaleCreateSerializer,
    SaleListSerializer,
    SaleSerializer,
)
from sales.services import (
    add_payment,
    cancel_pre_order,
    cancel_sale,
    convert_pre_order,
    create_pre_order,
    create_refund,
    create_sale,
    delete_pre_order,
    find_sale,
    process_refund,
    update_pre_order,
)


def _date_param(params, name):
    value = params.get(name)
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError({name: "Use the YYYY-MM-DD format."})
    return parsed


class CustomerViewSet(
    EnvelopeResponseMixin,
    AuditedMutationMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.view",
        "retrieve": "customers.view",
        "create": "customers.manage",
        "update": "customers.manage",
        "partial_update": "customers.manage",
    }
    audit_entity = "customer"

    def get_queryset(self):
        queryset = super().get_queryset()
        search = self.request.query_params.get("search")
        if search:
            queryset = queryset.filter(
                Q(name__icontains=search) | Q(phone__icontains=search) | Q(email__icontains=search)
            )
        return queryset

    def _audit_branch_id(self, instance):
        return getattr(self.request.user, "branch_id", None)


class SaleViewSet(ServiceContextMixin, EnvelopeResponseMixin, viewsets.GenericViewSet):
    queryset = Sale.objects.select_related("branch", "customer", "user")
    serializer_class = SaleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "sales.view",
        "retrieve": "sales.view",
        "create": "sales.create",
        "payments": "sales.payment",
        "cancel": "sales.cancel",
        "refunds": "refund.request",
    }

    def get_queryset(self):
        policy = self.get_policy()
        params = self.request.query_params
        queryset = super().get_queryset()

        if policy.is_admin:
            branch_id = uuid_query_param(params, "branchId")
            if branch_id:
                queryset = queryset.filter(branch_id=branch_id)
        elif not policy.branch_id:
            raise PermissionDenied(NO_BRANCH_MESSAGE)
        else:
            queryset = policy.scope(queryset)

        start_date = _date_param(params, "startDate")
        end_date = _date_param(params, "endDate")
        if start_date:
            queryset = queryset.filter(created_at__date__gte=start_date)
        if end_date:
            queryset = queryset.filter(created_at__date__lte=end_date)
        if params.get("paymentStatus"):
            queryset = queryset.filter(payment_status=params["paymentStatus"])
        customer_id = uuid_query_param(params, "customerId")
        if customer_id:
            queryset = queryset.filter(customer_id=customer_id)
        return queryset.order_by("-created_at")

    def _sale_id(self, pk):
        """Accept either the sale id or its invoice number in the URL."""
        try:
            return uuid.UUID(str(pk))
        except ValueError:
            return find_sale(self.get_policy(), pk).id

    def _detail(self, sale_id):
        sale = (
            Sale.objects.select_related("branch", "customer", "user")
            .prefetch_related("items__product", "payments__created_by", "refunds__requested_by", "refunds__processed_by")
            .get(pk=sale_id)
        )
        return SaleSerializer(sale).data

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(SaleListSerializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        sale = find_sale(self.get_policy(), pk)
        return success_response(data=self._detail(sale.id))

    def create(self, request):
        serializer = SaleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale = create_sale(
            self.get_policy(),
            self.get_actor(),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data=self._detail(sale.id),
            message="Sale created successfully",
            status_code=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="payments")
    def payments(self, request, pk=None):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale, payment = add_payment(
            self.get_policy(),
            self.get_actor(),
            self._sale_id(pk),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data={"payment": PaymentSerializer(payment).data, "sale": self._detail(sale.id)},
            message="Payment added successfully",
        )

    @action(detail=True, methods=["put"], url_path="cancel")
    def cancel(self, request, pk=None):
        serializer = SaleCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale = cancel_sale(
            self.get_policy(),
            self.get_actor(),
            self._sale_id(pk),
            reason=serializer.validated_data.get("reason"),
            request_id=self.get_request_id(),
        )
        return success_response(data=self._detail(sale.id), message="Sale cancelled successfully")

    @action(detail=True, methods=["post"], url_path="refunds")
    def refunds(self, request, pk=None):
        serializer = RefundCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        refund = create_refund(
            self.get_policy(),
            self.get_actor(),
            self._sale_id(pk),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data={"refundId": str(refund.id), "refundNumber": refund.refund_number},
            message="Refund request created successfully",
            status_code=status.HTTP_201_CREATED,
        )


class RefundViewSet(ServiceContextMixin, EnvelopeResponseMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Refund.objects.select_related("sale", "requested_by", "processed_by")
    serializer_class = RefundSerializer
    lookup_value_regex = UUID_LOOKUP_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "refund.view", "retrieve": "refund.view", "process": "refund.process"}

    def get_queryset(self):
        queryset = self.get_policy().scope(super().get_queryset(), field="sale__branch_id")
        if self.request.query_params.get("status"):
            queryset = queryset.filter(status=self.request.query_params["status"])
        sale_id = uuid_query_param(self.request.query_params, "saleId")
        if sale_id:
            queryset = queryset.filter(sale_id=sale_id)
        return queryset

    @action(detail=True, methods=["put"], url_path="process")
    def process(self, request, pk=None):
        serializer = RefundProcessSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        refund = process_refund(
            self.get_policy(),
            self.get_actor(),
            pk,
            serializer.validated_data["action"],
            request_id=self.get_request_id(),
        )
        verb = "approved" if refund.status == Refund.Status.COMPLETED else "rejected"
        return success_response(data=RefundSerializer(refund).data, message=f"Refund {verb} successfully")


class PreOrderViewSet(ServiceContextMixin, EnvelopeResponseMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = PreOrder.objects.select_related("branch", "user", "converted_sale").prefetch_related("items__product")
    serializer_class = PreOrderSerializer
    lookup_value_regex = UUID_LOOKUP_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "preorders.view",
        "retrieve": "preorders.view",
        "create": "preorders.manage",
        "partial_update": "preorders.manage",
        "convert": "preorders.convert",
        "cancel": "preorders.cancel",
        "destroy": "preorders.cancel",
    }

    def get_queryset(self):
        policy = self.get_policy()
        params = self.request.query_params
        queryset = super().get_queryset()

        if policy.is_admin:
            branch_id = uuid_query_param(params, "branchId")
            if branch_id:
                queryset = queryset.filter(branch_id=branch_id)
        elif not policy.branch_id:
            raise PermissionDenied(NO_BRANCH_MESSAGE)
        else:
            queryset = policy.scope(queryset)

        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        return queryset.order_by("-created_at")

    def _detail(self, order_id):
        return PreOrderSerializer(self.get_queryset().get(pk=order_id)).data

    def create(self, request):
        serializer = PreOrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = create_pre_order(
            self.get_policy(),
            self.get_actor(),
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data=self._detail(order.id),
            message="Pre-order created successfully",
            status_code=status.HTTP_201_CREATED,
        )

    def partial_update(self, request, pk=None):
        serializer = PreOrderUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        order = update_pre_order(
            self.get_policy(),
            self.get_actor(),
            pk,
            serializer.validated_data,
            request_id=self.get_request_id(),
        )
        return success_response(data=self._detail(order.id), message="Pre-order updated successfully")

    def destroy(self, request, pk=None):
        delete_pre_order(self.get_policy(), self.get_actor(), pk, request_id=self.get_request_id())
        return success_response(message="Pre-order deleted successfully")

    @action(detail=True, methods=["put"], url_path="cancel")
    def cancel(self, request, pk=None):
        serializer = PreOrderCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = cancel_pre_order(
            self.get_policy(),
            self.get_actor(),
            pk,
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        message = "Pre-order cancelled and advance will be refunded" if order.refund_advance else "Pre-order cancelled"
        return success_response(data=self._detail(order.id), message=message)

    @action(detail=True, methods=["post"], url_path="convert")
    def convert(self, request, pk=None):
        serializer = PreOrderConvertSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order, sale = convert_pre_order(
            self.get_policy(),
            self.get_actor(),
            pk,
            request_id=self.get_request_id(),
            **serializer.validated_data,
        )
        return success_response(
            data={
                "preOrder": self._detail(order.id),
                "saleId": str(sale.id),
                "invoiceNumber": sale.invoice_number,
            },
            message="Pre-order converted to sale successfully",
            status_code=status.HTTP_201_CREATED,
        )
