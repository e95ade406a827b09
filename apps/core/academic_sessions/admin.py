from django.contrib import admin

from .models import AcademicSession, Term


@admin.register(AcademicSession)
class AcademicSessionAdmin(admin.ModelAdmin):
    list_display = ('name', 'school', 'start_date', 'end_date', 'is_active')
    list_filter = ('school', 'is_active')
    search_fields = ('name',)


@admin.register(Term)
class TermAdmin(admin.ModelAdmin):
    list_display = ('number', 'session', 'school', 'start_date', 'end_date', 'is_current')
    list_filter = ('school', 'is_current')
