from rest_framework.routers import DefaultRouter

from sales.views import CustomerViewSet, PreOrderViewSet, RefundViewSet, SaleViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"sales", SaleViewSet, basename="sale")
router.register(r"refunds", RefundViewSet, basename="refund")
router.register(r"pre-orders", PreOrderViewSet, basename="pre-order")

urlpatterns = router.urls
