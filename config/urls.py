"""
URL Configuration for the transcoding service
"""

from django.urls import path, include

urlpatterns = [
    path('api/transcoder/', include('transcoder.urls')),
]
