from rest_framework import serializers

from .models import Payment, Wallet, WalletTransaction


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "booking",
            "provider",
            "order_id",
            "payment_id",
            "amount",
            "currency",
            "status",
            "refunded",
            "created_at",
        ]
        read_only_fields = fields


class VerifyPaymentSerializer(serializers.Serializer):
    razorpay_order_id = serializers.CharField(max_length=100)
    razorpay_payment_id = serializers.CharField(max_length=100)
    razorpay_signature = serializers.CharField(max_length=256)


class WalletTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = WalletTransaction
        fields = ["id", "kind", "amount", "booking", "note", "created_at"]
        read_only_fields = fields


class WalletSerializer(serializers.ModelSerializer):
    transactions = serializers.SerializerMethodField()

    class Meta:
        model = Wallet
        fields = ["balance", "updated_at", "transactions"]
        read_only_fields = fields

    def get_transactions(self, obj):
        recent = obj.transactions.all()[:20]
        return WalletTransactionSerializer(recent, many=True).data
