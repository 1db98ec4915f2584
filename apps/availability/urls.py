from django.urls import path
from . import views

app_name = 'availability'

urlpatterns = [
    path('providers/<uuid:provider_id>/weekly/',         views.weekly_availability, name='weekly'),
    path('providers/<uuid:provider_id>/slots/generate/', views.generate_slots,      name='generate'),
    path('providers/<uuid:provider_id>/slots/',          views.available_slots,     name='slots'),
    path('providers/<uuid:provider_id>/schedule/',       views.weekly_schedule,     name='schedule'),
    path('slots/<uuid:slot_id>/book/',                   views.book_slot,           name='book'),
    path('slots/<uuid:slot_id>/release/',                views.release_slot,        name='release'),
]
