from django.contrib import admin

from .models import BoardingEnrollment, BoardingFee, Hostel, Room


@admin.register(Hostel)
class HostelAdmin(admin.ModelAdmin):
    list_display = ('name', 'gender', 'capacity', 'school', 'is_active')
    list_filter = ('school', 'gender', 'is_active')
    search_fields = ('name',)


@admin.register(Room)
class RoomAdmin(admin.ModelAdmin):
    list_display = ('room_number', 'hostel', 'room_type', 'floor', 'capacity', 'is_active')
    list_filter = ('school', 'hostel', 'room_type', 'is_active')
    search_fields = ('room_number', 'hostel__name')


@admin.register(BoardingFee)
class BoardingFeeAdmin(admin.ModelAdmin):
    list_display = ('hostel', 'term', 'amount', 'currency', 'is_active')
    list_filter = ('school', 'term', 'is_active')


@admin.register(BoardingEnrollment)
class BoardingEnrollmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'hostel', 'room', 'term', 'status', 'enrolled_at')
    list_filter = ('school', 'hostel', 'term', 'status')
    search_fields = ('student__admission_number', 'student__first_name', 'student__last_name')

    def has_delete_permission(self, request, obj=None):
        return False
