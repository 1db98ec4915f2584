from django.urls import path
from . import views

app_name = 'bookings'

urlpatterns = [
    path('',                          views.bookings,       name='bookings'),
    path('<uuid:booking_id>/',         views.booking_detail, name='detail'),
    path('<uuid:booking_id>/accept/',  views.accept,         name='accept'),
    path('<uuid:booking_id>/decline/', views.decline,        name='decline'),
    path('<uuid:booking_id>/status/',  views.update_status,  name='status'),
]
