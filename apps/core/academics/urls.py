from django.urls import path

from .views import class_detail, class_list

urlpatterns = [
    path('', class_list, name='class_list'),
    path('<int:pk>/', class_detail, name='class_detail'),
]
