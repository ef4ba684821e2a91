from django.contrib import admin
from django.urls import path, include
from rest_framework.routers import DefaultRouter
from backend.dispatching.views import AutoFinishSweepView, ProviderViewSet, ServiceRequestViewSet

router = DefaultRouter()
router.register(r'requests', ServiceRequestViewSet, basename='request')
router.register(r'providers', ProviderViewSet)

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include(router.urls)),
    path('api/v1/sweeps/auto-finish/', AutoFinishSweepView.as_view(), name='auto-finish-sweep'),
]
