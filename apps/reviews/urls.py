from django.urls import path
from . import views

app_name = 'reviews'

urlpatterns = [
    path('bookings/<uuid:booking_id>/', views.review_booking, name='review'),
]
