from django.urls import path

from .views import school_current, school_list

urlpatterns = [
    path('', school_list, name='school_list'),
    path('current/', school_current, name='school_current'),
]
