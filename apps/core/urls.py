from django.urls import path
from . import views

app_name = 'core'

urlpatterns = [
    path('cron/<str:task>/', views.cron, name='cron'),
]
