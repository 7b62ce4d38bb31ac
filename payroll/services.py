"""
Staff onboarding and management.

Business owners hand out one-time invite codes; a wallet redeems a code to
join as a pending staff member, and the owner approves, re-prices or removes
the membership. Every failure raises PayrollError with a message suitable for
returning to the client as-is.
"""
import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from blockchain.constants import DECIMAL_QUANT

from .models import INVITE_CODE_LENGTH, InviteCode, PayrollError, StaffMember, generate_invite_code

logger = logging.getLogger(__name__)

INVALID_INVITE_MESSAGE = "Invalid or expired invite code"
MAX_CODE_ATTEMPTS = 10


def parse_salary(value) -> Decimal:
    """Positive salary quantized to 6 decimals"""
    try:
        salary = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise PayrollError("Salary must be a number")
    if not salary.is_finite() or salary <= 0:
        raise PayrollError("Salary must be greater than zero")
    return salary.quantize(DECIMAL_QUANT)


def create_invite_code(business) -> InviteCode:
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_invite_code()
        if InviteCode.objects.filter(code=code).exists():
            continue
        try:
            with transaction.atomic():
                invite = InviteCode.objects.create(code=code, business=business)
        except IntegrityError:
            continue
        logger.info("[Payroll] Invite code %s created for business %s", invite.code, business.id)
        return invite
    raise PayrollError("Could not generate a unique invite code, please try again")


def register_with_code(user, code, name='') -> StaffMember:
    """Redeem `code` for `user`, creating a pending membership."""
    code = (code or '').strip().upper()
    if len(code) < INVITE_CODE_LENGTH:
        raise PayrollError("Please enter a valid 6-character code")

    with transaction.atomic():
        invite = (
            InviteCode.objects.select_for_update()
            .select_related('business')
            .filter(code=code, used=False, business__deleted_at__isnull=True)
            .first()
        )
        if not invite:
            raise PayrollError(INVALID_INVITE_MESSAGE)
        if invite.business.owner_id == user.id:
            raise PayrollError("You cannot join your own business as staff")
        if StaffMember.objects.filter(user=user).exists():
            raise PayrollError("This wallet is already registered with a business. Leave your current job first.")

        now = timezone.now()
        staff = StaffMember.objects.create(
            business=invite.business,
            user=user,
            name=(name or '').strip(),
            wallet_address=user.wallet_address,
            salary=settings.PAYROLL_DEFAULT_SALARY,
            status='pending',
            invite_code=invite,
        )
        invite.used = True
        invite.used_by = user.wallet_address
        invite.used_at = now
        invite.save(update_fields=['used', 'used_by', 'used_at'])

    logger.info(
        "[Payroll] Wallet %s registered with code %s for business %s",
        user.wallet_address, code, invite.business_id,
    )
    return staff


def parse_staff_id(value) -> int:
    """Primary key from a client-supplied staff id"""
    try:
        staff_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise PayrollError("Staff member not found")
    if staff_id <= 0:
        raise PayrollError("Staff member not found")
    return staff_id


def _get_staff(business, staff_id) -> StaffMember:
    staff = StaffMember.objects.filter(id=parse_staff_id(staff_id), business=business).first()
    if not staff:
        raise PayrollError("Staff member not found")
    return staff


def approve_staff(business, staff_id) -> StaffMember:
    staff = _get_staff(business, staff_id)
    if staff.status != 'active':
        staff.status = 'active'
        staff.approved_at = timezone.now()
        staff.save(update_fields=['status', 'approved_at', 'updated_at'])
        logger.info("[Payroll] Staff %s approved by business %s", staff.id, business.id)
    return staff


def delete_staff(business, staff_id) -> StaffMember:
    staff = _get_staff(business, staff_id)
    staff.soft_delete()
    logger.info("[Payroll] Staff %s removed from business %s", staff.id, business.id)
    return staff


def update_staff_salary(business, staff_id, salary) -> StaffMember:
    amount = parse_salary(salary)
    staff = _get_staff(business, staff_id)
    staff.salary = amount
    staff.save(update_fields=['salary', 'updated_at'])
    logger.info("[Payroll] Staff %s salary set to %s", staff.id, amount)
    return staff


def update_payout_preference(user, prefer_usyc) -> StaffMember:
    staff = StaffMember.objects.filter(user=user).first()
    if not staff:
        raise PayrollError("You are not registered with a business")
    staff.prefer_usyc = bool(prefer_usyc)
    staff.save(update_fields=['prefer_usyc', 'updated_at'])
    return staff


def leave_job(user) -> StaffMember:
    staff = StaffMember.objects.filter(user=user).first()
    if not staff:
        raise PayrollError("You are not registered with a business")
    staff.soft_delete()
    logger.info("[Payroll] Wallet %s left business %s", user.wallet_address, staff.business_id)
    return staff
