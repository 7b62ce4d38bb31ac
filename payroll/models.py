import uuid
import secrets
import string
from decimal import Decimal

from django.conf import settings
from django.db import models

from users.models import SoftDeleteModel

INVITE_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
INVITE_CODE_LENGTH = 6


def generate_invite_code():
    """Six characters without the easily confused 0/O and 1/I"""
    return ''.join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def generate_run_id():
    """Generate a unique payroll run ID"""
    return ''.join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(10))


def generate_payroll_item_id():
    """Generate a unique payroll item ID (32-char hex UUID)"""
    return uuid.uuid4().hex


class PayrollError(ValueError):
    """Validation failure in a payroll operation; the message is user-facing."""


class InviteCode(models.Model):
    """One-time code a business hands to a new staff member"""

    code = models.CharField(max_length=INVITE_CODE_LENGTH, unique=True, default=generate_invite_code)
    business = models.ForeignKey(
        'users.Business',
        on_delete=models.CASCADE,
        related_name='invite_codes',
    )
    used = models.BooleanField(default=False)
    used_by = models.CharField(max_length=42, blank=True, help_text="Wallet that redeemed the code")
    used_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['business', 'used'], name='payroll_inv_busines_3f1c2a_idx'),
        ]

    def __str__(self):
        return f"{self.code} ({self.business.name})"


class StaffMember(SoftDeleteModel):
    """A wallet employed by a business"""

    STATUS_CHOICES = [
        ('pending', 'Pending approval'),
        ('active', 'Active'),
    ]

    business = models.ForeignKey(
        'users.Business',
        on_delete=models.CASCADE,
        related_name='staff_members',
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='staff_memberships',
    )
    name = models.CharField(max_length=255, blank=True)
    wallet_address = models.CharField(max_length=42, help_text="Payout wallet (checksummed)")
    salary = models.DecimalField(max_digits=19, decimal_places=6, default=Decimal('3000'))
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending')
    prefer_usyc = models.BooleanField(
        default=False,
        help_text="Staff-only preference: receive salary as USYC. Never shown to the business.",
    )
    invite_code = models.ForeignKey(
        InviteCode,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='registrations',
    )
    joined_at = models.DateTimeField(auto_now_add=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    last_payment_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-joined_at']
        indexes = [
            models.Index(fields=['business', 'status'], name='payroll_sta_busines_8d2e41_idx'),
            models.Index(fields=['wallet_address'], name='payroll_sta_wallet__6b0f93_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['user'],
                condition=models.Q(deleted_at__isnull=True),
                name='one_active_membership_per_user',
            )
        ]

    def __str__(self):
        return f"{self.name or self.wallet_address} @ {self.business.name}"


class PayrollRun(SoftDeleteModel):
    """Represents a payroll batch for a business"""

    STATUS_CHOICES = [
        ('READY', 'Ready'),
        ('PREPARED', 'Prepared'),
        ('PROCESSING', 'Processing'),
        ('PARTIAL', 'Partial'),
        ('COMPLETED', 'Completed'),
        ('FAILED', 'Failed'),
        ('CANCELLED', 'Cancelled'),
    ]

    EXECUTION_MODES = [
        ('batch', 'Batch contract'),
        ('sequential', 'Sequential transfers'),
    ]

    run_id = models.CharField(max_length=32, unique=True, default=generate_run_id, editable=False)
    business = models.ForeignKey(
        'users.Business',
        on_delete=models.CASCADE,
        related_name='payroll_runs',
        help_text="Business owning this payroll run",
    )
    created_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='payroll_runs_created',
        help_text="User who created the payroll run",
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='READY')
    execution_mode = models.CharField(max_length=20, choices=EXECUTION_MODES, blank=True)
    total_amount = models.DecimalField(max_digits=19, decimal_places=6, default=Decimal('0'))
    blockchain_data = models.JSONField(null=True, blank=True, help_text="Plan, unsigned transactions and hashes")
    submitted_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['run_id'], name='payroll_pay_run_id_5a7c10_idx'),
            models.Index(fields=['business', 'status'], name='payroll_pay_busines_c41d77_idx'),
            models.Index(fields=['created_by_user'], name='payroll_pay_created_0e9b52_idx'),
        ]

    def __str__(self):
        return f"PAYROLL-{self.run_id} ({self.business.name})"

    @property
    def transaction_hashes(self):
        return list((self.blockchain_data or {}).get('tx_hashes') or [])


class PayrollItem(SoftDeleteModel):
    """Single payout to a staff wallet within a run"""

    STATUS_CHOICES = [
        ('PENDING', 'Pending'),
        ('PREPARED', 'Prepared'),
        ('SUBMITTED', 'Submitted'),
        ('CONFIRMED', 'Confirmed'),
        ('FAILED', 'Failed'),
        ('CANCELLED', 'Cancelled'),
    ]

    TOKEN_TYPES = [
        ('USDC', 'USD Coin'),
        ('USYC', 'Hashnote US Yield Coin'),
    ]

    item_id = models.CharField(max_length=32, unique=True, default=generate_payroll_item_id, editable=False)
    run = models.ForeignKey(
        PayrollRun,
        on_delete=models.CASCADE,
        related_name='items',
    )
    staff = models.ForeignKey(
        StaffMember,
        on_delete=models.CASCADE,
        related_name='payroll_items',
    )
    recipient_address = models.CharField(max_length=42)
    amount = models.DecimalField(max_digits=19, decimal_places=6, help_text="Salary in USDC")
    token_type = models.CharField(max_length=10, choices=TOKEN_TYPES, default='USDC')
    token_amount = models.DecimalField(
        max_digits=19,
        decimal_places=6,
        null=True,
        blank=True,
        help_text="Amount delivered in token_type",
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='PENDING')
    transaction_hash = models.CharField(max_length=66, blank=True, help_text="Payout transaction hash")
    error_message = models.TextField(blank=True)
    executed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['item_id'], name='payroll_pay_item_id_9e3f21_idx'),
            models.Index(fields=['run', 'status'], name='payroll_pay_run_id_b27a4c_idx'),
            models.Index(fields=['transaction_hash'], name='payroll_pay_transac_7d51e8_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['run', 'staff'],
                condition=models.Q(deleted_at__isnull=True),
                name='unique_staff_per_run_if_not_deleted',
            )
        ]

    def __str__(self):
        return f"{self.item_id} -> {self.recipient_address}"
