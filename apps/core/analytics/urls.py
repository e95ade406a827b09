from django.urls import path

from .views import (
    balances_by_class_view,
    collection_efficiency_view,
    debt_summary_view,
    financial_health_view,
    payment_completion_view,
)

urlpatterns = [
    path('balances-by-class/', balances_by_class_view, name='analytics_balances_by_class'),
    path('debt-summary/', debt_summary_view, name='analytics_debt_summary'),
    path('financial-health/', financial_health_view, name='analytics_financial_health'),
    path('payment-completion/', payment_completion_view, name='analytics_payment_completion'),
    path('collection-efficiency/', collection_efficiency_view, name='analytics_collection_efficiency'),
]
