from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),

    path('api/auth/', include('apps.core.users.urls')),
    path('api/schools/', include('apps.core.schools.urls')),
    path('api/sessions/', include('apps.core.academic_sessions.urls')),
    path('api/classes/', include('apps.core.academics.urls')),
    path('api/students/', include('apps.core.students.urls')),
    path('api/fees/', include('apps.core.fees.urls')),
    path('api/boarding/', include('apps.core.boarding.urls')),
    path('api/accounting/', include('apps.core.accounting.urls')),
    path('api/analytics/', include('apps.core.analytics.urls')),
]
