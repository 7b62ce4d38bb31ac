from django.contrib import admin

from .models import InviteCode, PayrollItem, PayrollRun, StaffMember


@admin.register(InviteCode)
class InviteCodeAdmin(admin.ModelAdmin):
    list_display = ('code', 'business', 'used', 'used_by', 'used_at', 'created_at')
    list_filter = ('used', 'business', 'created_at')
    search_fields = ('code', 'business__name', 'used_by')
    readonly_fields = ('created_at',)
    ordering = ('-created_at',)


@admin.register(StaffMember)
class StaffMemberAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'name',
        'wallet_address',
        'business',
        'status',
        'salary',
        'prefer_usyc',
        'last_payment_at',
        'joined_at',
    )
    list_filter = ('status', 'prefer_usyc', 'business', 'deleted_at')
    search_fields = ('name', 'wallet_address', 'business__name')
    readonly_fields = ('joined_at', 'approved_at', 'last_payment_at', 'created_at', 'updated_at')
    ordering = ('-joined_at',)

    def get_queryset(self, request):
        return StaffMember.all_objects.select_related('business')


class PayrollItemInline(admin.TabularInline):
    model = PayrollItem
    extra = 0
    fields = ('item_id', 'staff', 'recipient_address', 'amount', 'token_type', 'token_amount', 'status', 'transaction_hash')
    readonly_fields = fields
    can_delete = False


@admin.register(PayrollRun)
class PayrollRunAdmin(admin.ModelAdmin):
    list_display = (
        'run_id',
        'business',
        'status',
        'execution_mode',
        'total_amount',
        'item_count',
        'created_by_user',
        'submitted_at',
        'created_at',
    )
    list_filter = ('status', 'execution_mode', 'business', 'created_at', 'deleted_at')
    search_fields = ('run_id', 'business__name', 'created_by_user__username')
    readonly_fields = ('run_id', 'total_amount', 'blockchain_data', 'submitted_at', 'completed_at', 'created_at', 'updated_at')
    ordering = ('-created_at',)
    inlines = [PayrollItemInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'


@admin.register(PayrollItem)
class PayrollItemAdmin(admin.ModelAdmin):
    list_display = (
        'item_id',
        'run',
        'staff',
        'recipient_address',
        'amount',
        'token_type',
        'token_amount',
        'status',
        'executed_at',
        'created_at',
    )
    list_filter = ('status', 'token_type', 'run__business', 'created_at', 'deleted_at')
    search_fields = ('item_id', 'run__run_id', 'recipient_address', 'transaction_hash')
    readonly_fields = ('item_id', 'amount', 'token_amount', 'created_at', 'updated_at')
    ordering = ('-created_at',)
