from django.urls import path

from .views import (
    assignment_list,
    fee_structure_assign,
    fee_structure_detail,
    fee_structure_generate_annual,
    fee_structure_list,
    invoice_structure_detail,
    invoice_structure_list,
    payment_detail,
    payment_list,
    payment_refund,
    payment_reverse,
    refund_list,
    waiver_category_detail,
    waiver_category_list,
    waiver_list,
)

urlpatterns = [
    path('invoice-structures/', invoice_structure_list, name='invoice_structure_list'),
    path('invoice-structures/<int:pk>/', invoice_structure_detail, name='invoice_structure_detail'),
    path('structures/', fee_structure_list, name='fee_structure_list'),
    path('structures/<int:pk>/', fee_structure_detail, name='fee_structure_detail'),
    path('structures/<int:pk>/assign/', fee_structure_assign, name='fee_structure_assign'),
    path(
        'structures/<int:pk>/generate-annual/',
        fee_structure_generate_annual,
        name='fee_structure_generate_annual',
    ),
    path('assignments/', assignment_list, name='fee_assignment_list'),
    path('payments/', payment_list, name='fee_payment_list'),
    path('payments/<int:pk>/', payment_detail, name='fee_payment_detail'),
    path('payments/<int:pk>/reverse/', payment_reverse, name='fee_payment_reverse'),
    path('payments/<int:pk>/refund/', payment_refund, name='fee_payment_refund'),
    path('refunds/', refund_list, name='fee_refund_list'),
    path('waiver-categories/', waiver_category_list, name='waiver_category_list'),
    path('waiver-categories/<int:pk>/', waiver_category_detail, name='waiver_category_detail'),
    path('waivers/', waiver_list, name='fee_waiver_list'),
]
