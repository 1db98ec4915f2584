"""
Account model — a marketplace user. The same row is a client when it books
and a provider when it owns services (is_professional=True).

account_balance holds released escrow funds available for withdrawal.
It is only ever changed with conditional F() updates by the escrow ledger,
never by read-modify-write.
"""
from django.db import models
from django.core.validators import MinValueValidator
from apps.core.models import UUIDModel, TimestampedModel
from apps.core.exceptions import NotFoundError


class Account(UUIDModel, TimestampedModel):
    name = models.CharField(max_length=120)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=20, blank=True)
    is_professional = models.BooleanField(default=False, db_index=True)
    account_balance = models.DecimalField(
        max_digits=12, decimal_places=2, default=0,
        validators=[MinValueValidator(0)],
    )

    class Meta:
        verbose_name = 'Account'
        verbose_name_plural = 'Accounts'
        ordering = ['name']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(account_balance__gte=0),
                name='ck_account_balance_non_negative',
            ),
        ]

    def __str__(self):
        return f"{self.name} ({'provider' if self.is_professional else 'client'})"

    @classmethod
    def get(cls, account_id):
        try:
            return cls.objects.get(id=account_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Account not found.')


class BankAccount(UUIDModel, TimestampedModel):
    """Payout destination for withdrawals. Only the last digits are stored."""
    account = models.ForeignKey(Account, on_delete=models.CASCADE, related_name='bank_accounts')
    bank_name = models.CharField(max_length=120)
    account_number_last4 = models.CharField(max_length=4)
    is_primary = models.BooleanField(default=False)

    class Meta:
        verbose_name = 'Bank Account'
        verbose_name_plural = 'Bank Accounts'
        ordering = ['-is_primary', '-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['account'],
                condition=models.Q(is_primary=True),
                name='uq_primary_bank_account',
            ),
        ]

    def __str__(self):
        return f"{self.bank_name} ****{self.account_number_last4}"
