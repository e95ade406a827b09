from django.urls import path

from .views import api_login, api_logout, api_me, audit_log_list, user_list

urlpatterns = [
    path('login/', api_login, name='api_login'),
    path('logout/', api_logout, name='api_logout'),
    path('me/', api_me, name='api_me'),
    path('users/', user_list, name='api_user_list'),
    path('audit-logs/', audit_log_list, name='api_audit_log_list'),
]
