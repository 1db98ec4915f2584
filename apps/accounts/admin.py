from django.contrib import admin
from .models import Account, BankAccount


class BankAccountInline(admin.TabularInline):
    model = BankAccount
    extra = 0


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = ['name', 'email', 'phone', 'is_professional', 'account_balance', 'created_at']
    list_filter = ['is_professional']
    search_fields = ['name', 'email', 'phone']
    # Balance moves only through the escrow ledger
    readonly_fields = ['id', 'account_balance', 'created_at', 'updated_at']
    inlines = [BankAccountInline]
