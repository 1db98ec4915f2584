"""
URL configuration for the ServiceHub booking engine.
"""
from django.contrib import admin
from django.conf import settings
from django.urls import path, include

urlpatterns = [
    path(settings.ADMIN_URL, admin.site.urls),
    path('availability/', include('apps.availability.urls', namespace='availability')),
    path('bookings/', include('apps.bookings.urls', namespace='bookings')),
    path('payments/', include('apps.payments.urls', namespace='payments')),
    path('policies/', include('apps.policies.urls', namespace='policies')),
    path('waitlist/', include('apps.waitlist.urls', namespace='waitlist')),
    path('reviews/', include('apps.reviews.urls', namespace='reviews')),
    path('', include('apps.core.urls', namespace='core')),
]

if settings.DEBUG and 'debug_toolbar' in settings.INSTALLED_APPS:
    import debug_toolbar
    urlpatterns = [path('__debug__/', include(debug_toolbar.urls))] + urlpatterns
