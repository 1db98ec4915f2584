from django.urls import path
from . import views

app_name = 'waitlist'

urlpatterns = [
    path('',                               views.waitlists,        name='waitlists'),
    path('<uuid:waitlist_id>/leave/',      views.leave,            name='leave'),
    path('<uuid:waitlist_id>/priority/',   views.priority,         name='priority'),
    path('<uuid:waitlist_id>/notify/',     views.notify,           name='notify'),
    path('<uuid:waitlist_id>/convert/',    views.convert,          name='convert'),
    path('services/<uuid:service_id>/',    views.service_waitlist, name='service'),
]
