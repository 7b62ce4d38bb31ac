import logging

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone

logger = logging.getLogger(__name__)


class SoftDeleteManager(models.Manager):
    """Manager that filters out soft-deleted objects by default"""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def with_deleted(self):
        """Return queryset including soft-deleted objects"""
        return super().get_queryset()

    def only_deleted(self):
        """Return queryset with only soft-deleted objects"""
        return super().get_queryset().filter(deleted_at__isnull=False)


class SoftDeleteModel(models.Model):
    """Base model with soft delete functionality"""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True, help_text="Soft delete timestamp")

    objects = SoftDeleteManager()
    all_objects = models.Manager()  # Access to all objects including deleted

    class Meta:
        abstract = True

    def soft_delete(self):
        """Soft delete the object"""
        self.deleted_at = timezone.now()
        self.save(update_fields=['deleted_at', 'updated_at'])

    def restore(self):
        """Restore a soft-deleted object"""
        self.deleted_at = None
        self.save(update_fields=['deleted_at', 'updated_at'])

    @property
    def is_deleted(self):
        return self.deleted_at is not None


class User(AbstractUser, SoftDeleteModel):
    """A wallet identity. The username is the lower-cased wallet address."""

    wallet_address = models.CharField(
        max_length=42,
        unique=True,
        help_text="EIP-55 checksummed wallet address used to sign in",
    )
    auth_token_version = models.IntegerField(
        default=1,
        help_text="Version number for JWT tokens. Incrementing this invalidates all existing tokens.",
    )
    last_wallet_login_at = models.DateTimeField(null=True, blank=True)

    REQUIRED_FIELDS = ['email', 'wallet_address']

    def __str__(self):
        return self.wallet_address or self.username

    def increment_auth_token_version(self):
        """Increment the auth token version to invalidate all existing tokens"""
        self.auth_token_version += 1
        self.save(update_fields=['auth_token_version'])

    @property
    def role(self):
        """'business' for business owners, 'staff' for staff members, else None"""
        if Business.objects.filter(owner=self).exists():
            return 'business'
        from payroll.models import StaffMember
        if StaffMember.objects.filter(user=self).exists():
            return 'staff'
        return None


class Business(SoftDeleteModel):
    """An employer. One business per owner wallet."""

    name = models.CharField(max_length=255, help_text="Business name")
    owner = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name='business',
        help_text="Wallet that owns the business treasury",
    )

    class Meta:
        verbose_name_plural = "Businesses"
        ordering = ['name']

    def __str__(self):
        return self.name

    @property
    def treasury_address(self):
        """Payroll is funded from the owner's wallet"""
        return self.owner.wallet_address
