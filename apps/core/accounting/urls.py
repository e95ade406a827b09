from django.urls import path

from .views import (
    account_balance_list,
    account_balance_recalculate,
    account_detail,
    account_list,
    currency_detail,
    currency_list,
    currency_set_base,
    journal_entry_detail,
    journal_entry_list,
    journal_entry_reverse,
    trial_balance_view,
)

urlpatterns = [
    path('currencies/', currency_list, name='currency_list'),
    path('currencies/<int:pk>/', currency_detail, name='currency_detail'),
    path('currencies/<int:pk>/set-base/', currency_set_base, name='currency_set_base'),
    path('accounts/', account_list, name='account_list'),
    path('accounts/<int:pk>/', account_detail, name='account_detail'),
    path('journal-entries/', journal_entry_list, name='journal_entry_list'),
    path('journal-entries/<int:pk>/', journal_entry_detail, name='journal_entry_detail'),
    path('journal-entries/<int:pk>/reverse/', journal_entry_reverse, name='journal_entry_reverse'),
    path('balances/', account_balance_list, name='account_balance_list'),
    path('balances/recalculate/', account_balance_recalculate, name='account_balance_recalculate'),
    path('trial-balance/', trial_balance_view, name='trial_balance'),
]
