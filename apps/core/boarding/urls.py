from django.urls import path

from .views import (
    boarding_enrollment_check_in,
    boarding_enrollment_check_out,
    boarding_enrollment_list,
    boarding_enrollment_withdraw,
    boarding_fee_detail,
    boarding_fee_list,
    boarding_payment_list,
    hostel_detail,
    hostel_list,
    room_detail,
    room_list,
)

urlpatterns = [
    path('hostels/', hostel_list, name='hostel_list'),
    path('hostels/<int:pk>/', hostel_detail, name='hostel_detail'),
    path('rooms/', room_list, name='room_list'),
    path('rooms/<int:pk>/', room_detail, name='room_detail'),
    path('fees/', boarding_fee_list, name='boarding_fee_list'),
    path('fees/<int:pk>/', boarding_fee_detail, name='boarding_fee_detail'),
    path('enrollments/', boarding_enrollment_list, name='boarding_enrollment_list'),
    path(
        'enrollments/<int:pk>/withdraw/',
        boarding_enrollment_withdraw,
        name='boarding_enrollment_withdraw',
    ),
    path(
        'enrollments/<int:pk>/check-in/',
        boarding_enrollment_check_in,
        name='boarding_enrollment_check_in',
    ),
    path(
        'enrollments/<int:pk>/check-out/',
        boarding_enrollment_check_out,
        name='boarding_enrollment_check_out',
    ),
    path('payments/', boarding_payment_list, name='boarding_payment_list'),
]
