from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import BranchStockView, ProductImeiViewSet, ProductViewSet, StockTransferViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"imeis", ProductImeiViewSet, basename="product-imei")
router.register(r"transfers", StockTransferViewSet, basename="stock-transfer")

urlpatterns = router.urls + [
    path("stock/", BranchStockView.as_view(), name="branch-stock"),
]
