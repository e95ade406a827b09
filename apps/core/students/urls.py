from django.urls import path

from apps.core.fees import views as fee_views

from .views import enrollment_list, enrollment_withdraw, student_detail, student_list

urlpatterns = [
    path('', student_list, name='student_list'),
    path('<int:pk>/', student_detail, name='student_detail'),
    path('enrollments/', enrollment_list, name='enrollment_list'),
    path('enrollments/<int:pk>/withdraw/', enrollment_withdraw, name='enrollment_withdraw'),
    path('<int:pk>/balance/', fee_views.student_balance, name='student_balance'),
    path(
        '<int:pk>/balance/recalculate/',
        fee_views.student_balance_recalculate,
        name='student_balance_recalculate',
    ),
    path('<int:pk>/balance/reconcile/', fee_views.student_balance_reconcile, name='student_balance_reconcile'),
    path('<int:pk>/transactions/', fee_views.student_transactions, name='student_transactions'),
    path('<int:pk>/opening-balance/', fee_views.student_opening_balance, name='student_opening_balance'),
    path('<int:pk>/adjustments/', fee_views.student_adjustment, name='student_adjustment'),
    path('transactions/<int:pk>/reverse/', fee_views.transaction_reverse, name='student_transaction_reverse'),
    path('balances/outstanding/', fee_views.outstanding_balance_list, name='outstanding_balance_list'),
    path('balances/opening/', fee_views.opening_balance_lookup, name='opening_balance_lookup'),
]
