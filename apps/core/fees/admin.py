from django.contrib import admin

from .models import (
    FeePayment,
    FeePaymentAllocation,
    FeeRefund,
    FeeStructure,
    FeeWaiver,
    InvoiceItem,
    InvoiceStructure,
    StudentBalance,
    StudentFeeAssignment,
    StudentTransaction,
    WaiverCategory,
)


class ReadOnlyFinancialAdmin(admin.ModelAdmin):
    def has_delete_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0


@admin.register(InvoiceStructure)
class InvoiceStructureAdmin(admin.ModelAdmin):
    list_display = ('name', 'school_class', 'term', 'currency', 'total_amount', 'is_active')
    list_filter = ('school', 'term', 'is_active')
    search_fields = ('name', 'school_class__name')
    inlines = [InvoiceItemInline]


@admin.register(FeeStructure)
class FeeStructureAdmin(admin.ModelAdmin):
    list_display = ('name', 'fee_type', 'amount', 'currency', 'school', 'is_active')
    list_filter = ('school', 'fee_type', 'is_active')
    search_fields = ('name',)


@admin.register(StudentTransaction)
class StudentTransactionAdmin(ReadOnlyFinancialAdmin):
    list_display = (
        'student',
        'transaction_type',
        'category',
        'amount',
        'balance_after',
        'transaction_date',
        'is_reversed',
    )
    list_filter = ('school', 'transaction_type', 'category', 'is_reversed')
    search_fields = ('student__admission_number', 'description', 'reference')


@admin.register(StudentBalance)
class StudentBalanceAdmin(ReadOnlyFinancialAdmin):
    list_display = ('student', 'current_balance', 'school', 'updated_at')
    list_filter = ('school',)
    search_fields = ('student__admission_number', 'student__first_name', 'student__last_name')


@admin.register(StudentFeeAssignment)
class StudentFeeAssignmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'category', 'description', 'amount', 'term', 'due_date', 'is_cancelled')
    list_filter = ('school', 'category', 'is_cancelled')
    search_fields = ('student__admission_number', 'description')

    def has_delete_permission(self, request, obj=None):
        return False


class FeePaymentAllocationInline(admin.TabularInline):
    model = FeePaymentAllocation
    extra = 0
    can_delete = False
    readonly_fields = ('assignment', 'amount', 'is_release', 'refund')


@admin.register(FeePayment)
class FeePaymentAdmin(ReadOnlyFinancialAdmin):
    list_display = (
        'receipt_number',
        'student',
        'category',
        'amount',
        'currency',
        'base_amount',
        'payment_method',
        'payment_date',
        'status',
    )
    list_filter = ('school', 'category', 'payment_method', 'status')
    search_fields = ('receipt_number', 'student__admission_number', 'reference_number')
    inlines = [FeePaymentAllocationInline]


@admin.register(FeeRefund)
class FeeRefundAdmin(ReadOnlyFinancialAdmin):
    list_display = ('payment', 'student', 'amount', 'refund_date', 'approved_by')
    list_filter = ('school', 'refund_date')


@admin.register(WaiverCategory)
class WaiverCategoryAdmin(admin.ModelAdmin):
    list_display = ('name', 'school', 'is_active')
    list_filter = ('school', 'is_active')


@admin.register(FeeWaiver)
class FeeWaiverAdmin(ReadOnlyFinancialAdmin):
    list_display = ('student', 'category', 'waiver_type', 'amount', 'currency', 'base_amount', 'created_at')
    list_filter = ('school', 'waiver_type', 'category')
    search_fields = ('student__admission_number', 'reason')
