from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import Business, User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ('wallet_address', 'username', 'is_staff', 'last_wallet_login_at', 'date_joined')
    search_fields = ('wallet_address', 'username')
    readonly_fields = ('last_wallet_login_at', 'date_joined', 'last_login')
    ordering = ('-date_joined',)
    fieldsets = BaseUserAdmin.fieldsets + (
        ('Wallet', {'fields': ('wallet_address', 'auth_token_version', 'last_wallet_login_at', 'deleted_at')}),
    )


@admin.register(Business)
class BusinessAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner', 'created_at', 'deleted_at')
    list_filter = ('created_at', 'deleted_at')
    search_fields = ('name', 'owner__wallet_address')
    readonly_fields = ('created_at', 'updated_at')

    def get_queryset(self, request):
        return Business.all_objects.select_related('owner')
