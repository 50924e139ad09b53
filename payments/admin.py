from django.contrib import admin
from .models import Payment, Wallet, WalletTransaction


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ["id", "booking", "provider", "amount", "currency", "status", "refunded", "created_at"]
    list_filter = ["provider", "status", "refunded"]
    search_fields = ["order_id", "payment_id"]
    raw_id_fields = ["booking"]


class WalletTransactionInline(admin.TabularInline):
    model = WalletTransaction
    extra = 0
    readonly_fields = ["kind", "amount", "booking", "note", "created_at"]


@admin.register(Wallet)
class WalletAdmin(admin.ModelAdmin):
    list_display = ["user", "balance", "updated_at"]
    search_fields = ["user__name", "user__email"]
    raw_id_fields = ["user"]
    inlines = [WalletTransactionInline]
