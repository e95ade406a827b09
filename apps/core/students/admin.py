from django.contrib import admin

from .models import ClassEnrollment, Student


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ('admission_number', 'first_name', 'last_name', 'gender', 'school', 'is_active')
    list_filter = ('school', 'gender', 'is_active')
    search_fields = ('admission_number', 'first_name', 'last_name', 'guardian_phone')


@admin.register(ClassEnrollment)
class ClassEnrollmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'school_class', 'term', 'status', 'enrolled_at')
    list_filter = ('school', 'term', 'status')
    search_fields = ('student__admission_number', 'student__first_name', 'student__last_name')

    def has_delete_permission(self, request, obj=None):
        return False
