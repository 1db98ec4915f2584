from django.urls import path
from . import views

app_name = 'policies'

urlpatterns = [
    path('',                                       views.create_policy,         name='create'),
    path('templates/',                             views.templates,             name='templates'),
    path('<uuid:policy_id>/',                      views.update_policy,         name='update'),
    path('<uuid:policy_id>/deactivate/',           views.deactivate_policy,     name='deactivate'),
    path('services/<uuid:service_id>/',            views.service_policies,      name='service'),
    path('bookings/<uuid:booking_id>/cancellation/', views.evaluate_cancellation, name='cancellation'),
    path('bookings/<uuid:booking_id>/rescheduling/', views.evaluate_rescheduling, name='rescheduling'),
]
