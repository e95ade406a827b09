from django.contrib import admin
from .models import ApiToken, AuditLog, User

@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'school', 'is_staff')
    list_filter = ('role', 'school')


@admin.register(ApiToken)
class ApiTokenAdmin(admin.ModelAdmin):
    list_display = ('prefix', 'user', 'created_at', 'expires_at', 'last_used_at', 'revoked_at')
    list_filter = ('revoked_at',)
    search_fields = ('prefix', 'user__username')
    readonly_fields = ('key_digest', 'prefix', 'created_at', 'last_used_at')


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'action', 'user', 'school', 'target_model', 'target_id')
    list_filter = ('action', 'school', 'method', 'created_at')
    search_fields = ('details', 'path', 'target_model', 'target_id', 'user__username')
