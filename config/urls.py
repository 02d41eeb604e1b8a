from django.contrib import admin
from django.urls import include, path
from rest_framework_simplejwt.views import TokenRefreshView

from core.views import EmailOrUsernameTokenObtainPairView, healthz, readyz

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/v1/token/", EmailOrUsernameTokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("api/v1/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("api/v1/healthz/", healthz, name="healthz"),
    path("api/v1/readyz/", readyz, name="readyz"),
    path("api/v1/inventory/", include("inventory.urls")),
    path("api/v1/", include("core.urls")),
    path("api/v1/", include("sales.urls")),
]
