from django.contrib import admin

from .models import AccountBalance, ChartOfAccount, Currency, JournalEntry, JournalEntryLine


@admin.register(Currency)
class CurrencyAdmin(admin.ModelAdmin):
    list_display = ('code', 'name', 'school', 'exchange_rate', 'is_base', 'is_active')
    list_filter = ('school', 'is_base', 'is_active')
    search_fields = ('code', 'name')


@admin.register(ChartOfAccount)
class ChartOfAccountAdmin(admin.ModelAdmin):
    list_display = ('code', 'name', 'account_type', 'school', 'is_system', 'is_active')
    list_filter = ('school', 'account_type', 'is_active')
    search_fields = ('code', 'name')


class JournalEntryLineInline(admin.TabularInline):
    model = JournalEntryLine
    extra = 0
    can_delete = False
    readonly_fields = ('account', 'description', 'debit', 'credit', 'base_debit', 'base_credit')


@admin.register(JournalEntry)
class JournalEntryAdmin(admin.ModelAdmin):
    list_display = ('entry_number', 'entry_date', 'description', 'school', 'currency', 'status')
    list_filter = ('school', 'status', 'entry_date')
    search_fields = ('entry_number', 'description', 'external_reference', 'reference_id')
    inlines = [JournalEntryLineInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AccountBalance)
class AccountBalanceAdmin(admin.ModelAdmin):
    list_display = ('account', 'currency', 'balance', 'school', 'updated_at')
    list_filter = ('school', 'currency')
