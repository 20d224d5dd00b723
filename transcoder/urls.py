from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import TranscodeJobViewSet

router = DefaultRouter()
router.register(r'jobs', TranscodeJobViewSet, basename='transcode-job')

urlpatterns = [
    path('', include(router.urls)),
]
