import logging

import graphene
from django.conf import settings
from graphene_django import DjangoObjectType

from blockchain.arc_client import ArcClientError
from users.context import get_authenticated_user, get_business_context, get_staff_membership

from . import execution, services
from .models import InviteCode, PayrollError, PayrollItem, PayrollRun, StaffMember


def _explorer_tx_url(tx_hash):
    if not tx_hash:
        return None
    return f"{settings.ARC_EXPLORER_URL.rstrip('/')}/tx/{tx_hash}"


class InviteCodeType(DjangoObjectType):
    class Meta:
        model = InviteCode
        convert_choices_to_enum = False
        fields = ('id', 'code', 'used', 'used_by', 'used_at', 'created_at')


class BusinessStaffMemberType(DjangoObjectType):
    """Staff as the employer sees them. The payout preference stays private."""

    class Meta:
        model = StaffMember
        convert_choices_to_enum = False
        fields = (
            'id',
            'name',
            'wallet_address',
            'salary',
            'status',
            'joined_at',
            'approved_at',
            'last_payment_at',
        )


class EmploymentType(graphene.ObjectType):
    """The caller's own membership, including the private preference"""
    id = graphene.ID()
    business_id = graphene.ID()
    business_name = graphene.String()
    wallet_address = graphene.String()
    name = graphene.String()
    status = graphene.String()
    salary = graphene.String()
    prefer_usyc = graphene.Boolean()
    joined_at = graphene.DateTime()
    approved_at = graphene.DateTime()
    last_payment_at = graphene.DateTime()

    @staticmethod
    def from_staff(staff):
        return EmploymentType(
            id=staff.id,
            business_id=staff.business_id,
            business_name=staff.business.name,
            wallet_address=staff.wallet_address,
            name=staff.name,
            status=staff.status,
            salary=str(staff.salary),
            prefer_usyc=staff.prefer_usyc,
            joined_at=staff.joined_at,
            approved_at=staff.approved_at,
            last_payment_at=staff.last_payment_at,
        )


class PayrollItemType(DjangoObjectType):
    """Business view of a payout; what token the employee chose is not exposed"""
    staff_name = graphene.String()
    explorer_url = graphene.String()

    class Meta:
        model = PayrollItem
        convert_choices_to_enum = False
        fields = (
            'id',
            'item_id',
            'recipient_address',
            'amount',
            'status',
            'transaction_hash',
            'error_message',
            'executed_at',
            'created_at',
        )

    def resolve_staff_name(self, info):
        return self.staff.name or self.staff.wallet_address

    def resolve_explorer_url(self, info):
        return _explorer_tx_url(self.transaction_hash)


class PayrollRunType(DjangoObjectType):
    items = graphene.List(PayrollItemType)
    item_count = graphene.Int()
    unsigned_transactions = graphene.JSONString()
    transaction_hashes = graphene.List(graphene.String)

    class Meta:
        model = PayrollRun
        convert_choices_to_enum = False
        fields = (
            'id',
            'run_id',
            'status',
            'execution_mode',
            'total_amount',
            'submitted_at',
            'completed_at',
            'created_at',
            'updated_at',
        )

    def resolve_items(self, info):
        return self.items.select_related('staff').all()

    def resolve_item_count(self, info):
        return self.items.count()

    def resolve_unsigned_transactions(self, info):
        if self.status != 'PREPARED':
            return None
        return (self.blockchain_data or {}).get('unsigned_transactions')

    def resolve_transaction_hashes(self, info):
        return self.transaction_hashes


class StaffPaymentType(graphene.ObjectType):
    item_id = graphene.String()
    run_id = graphene.String()
    business_name = graphene.String()
    amount = graphene.String()
    token_type = graphene.String()
    token_amount = graphene.String()
    status = graphene.String()
    transaction_hash = graphene.String()
    explorer_url = graphene.String()
    executed_at = graphene.DateTime()

    @staticmethod
    def from_item(item):
        return StaffPaymentType(
            item_id=item.item_id,
            run_id=item.run.run_id,
            business_name=item.run.business.name,
            amount=str(item.amount),
            token_type=item.token_type,
            token_amount=str(item.token_amount) if item.token_amount is not None else None,
            status=item.status,
            transaction_hash=item.transaction_hash or None,
            explorer_url=_explorer_tx_url(item.transaction_hash),
            executed_at=item.executed_at,
        )


class Query(graphene.ObjectType):
    staff_members = graphene.List(BusinessStaffMemberType, status=graphene.String())
    invite_codes = graphene.List(InviteCodeType, include_used=graphene.Boolean(default_value=False))
    payroll_runs = graphene.List(PayrollRunType, limit=graphene.Int(default_value=20))
    payroll_run = graphene.Field(PayrollRunType, run_id=graphene.String(required=True))
    my_employment = graphene.Field(EmploymentType)
    my_payments = graphene.List(StaffPaymentType, limit=graphene.Int(default_value=50))

    def resolve_staff_members(self, info, status=None):
        business = get_business_context(info)
        if not business:
            return []
        qs = StaffMember.objects.filter(business=business)
        if status:
            qs = qs.filter(status=status)
        return qs

    def resolve_invite_codes(self, info, include_used=False):
        business = get_business_context(info)
        if not business:
            return []
        qs = InviteCode.objects.filter(business=business)
        if not include_used:
            qs = qs.filter(used=False)
        return qs

    def resolve_payroll_runs(self, info, limit=20):
        business = get_business_context(info)
        if not business:
            return []
        return PayrollRun.objects.filter(business=business)[:max(1, min(limit, 100))]

    def resolve_payroll_run(self, info, run_id):
        business = get_business_context(info)
        if not business:
            return None
        return PayrollRun.objects.filter(business=business, run_id=run_id).first()

    def resolve_my_employment(self, info):
        staff = get_staff_membership(get_authenticated_user(info))
        return EmploymentType.from_staff(staff) if staff else None

    def resolve_my_payments(self, info, limit=50):
        user = get_authenticated_user(info)
        if not user:
            return []
        items = (
            PayrollItem.objects.select_related('run__business')
            .filter(staff__user=user)
            .exclude(status__in=['PENDING', 'CANCELLED'])
            .order_by('-created_at')[:max(1, min(limit, 200))]
        )
        return [StaffPaymentType.from_item(item) for item in items]


BUSINESS_REQUIRED = "Business account required"
AUTH_REQUIRED = "Authentication required"


class CreateInviteCode(graphene.Mutation):
    invite_code = graphene.Field(InviteCodeType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info):
        business = get_business_context(info)
        if not business:
            return CreateInviteCode(invite_code=None, success=False, errors=[BUSINESS_REQUIRED])
        try:
            invite = services.create_invite_code(business)
        except PayrollError as e:
            return CreateInviteCode(invite_code=None, success=False, errors=[str(e)])
        return CreateInviteCode(invite_code=invite, success=True, errors=None)


class RegisterWithCode(graphene.Mutation):
    class Arguments:
        code = graphene.String(required=True)
        name = graphene.String()

    employment = graphene.Field(EmploymentType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    logger = logging.getLogger(__name__)

    @classmethod
    def mutate(cls, root, info, code, name=''):
        user = get_authenticated_user(info)
        if not user:
            return RegisterWithCode(employment=None, success=False, errors=[AUTH_REQUIRED])
        try:
            staff = services.register_with_code(user, code, name)
        except PayrollError as e:
            cls.logger.info("[Payroll] Registration with code %s rejected: %s", (code or '').upper(), e)
            return RegisterWithCode(employment=None, success=False, errors=[str(e)])
        return RegisterWithCode(employment=EmploymentType.from_staff(staff), success=True, errors=None)


class StaffMutationResult(graphene.Mutation):
    """Shared shape for business-side staff mutations"""

    class Meta:
        abstract = True

    staff = graphene.Field(BusinessStaffMemberType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def _run(cls, info, operation, *args):
        business = get_business_context(info)
        if not business:
            return cls(staff=None, success=False, errors=[BUSINESS_REQUIRED])
        try:
            staff = operation(business, *args)
        except PayrollError as e:
            return cls(staff=None, success=False, errors=[str(e)])
        return cls(staff=staff, success=True, errors=None)


class ApproveStaff(StaffMutationResult):
    class Arguments:
        staff_id = graphene.ID(required=True)

    @classmethod
    def mutate(cls, root, info, staff_id):
        return cls._run(info, services.approve_staff, staff_id)


class DeleteStaff(StaffMutationResult):
    class Arguments:
        staff_id = graphene.ID(required=True)

    @classmethod
    def mutate(cls, root, info, staff_id):
        return cls._run(info, services.delete_staff, staff_id)


class UpdateStaffSalary(StaffMutationResult):
    class Arguments:
        staff_id = graphene.ID(required=True)
        salary = graphene.String(required=True)

    @classmethod
    def mutate(cls, root, info, staff_id, salary):
        return cls._run(info, services.update_staff_salary, staff_id, salary)


class UpdatePayoutPreference(graphene.Mutation):
    class Arguments:
        prefer_usyc = graphene.Boolean(required=True)

    employment = graphene.Field(EmploymentType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info, prefer_usyc):
        user = get_authenticated_user(info)
        if not user:
            return UpdatePayoutPreference(employment=None, success=False, errors=[AUTH_REQUIRED])
        try:
            staff = services.update_payout_preference(user, prefer_usyc)
        except PayrollError as e:
            return UpdatePayoutPreference(employment=None, success=False, errors=[str(e)])
        return UpdatePayoutPreference(employment=EmploymentType.from_staff(staff), success=True, errors=None)


class LeaveJob(graphene.Mutation):
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info):
        user = get_authenticated_user(info)
        if not user:
            return LeaveJob(success=False, errors=[AUTH_REQUIRED])
        try:
            services.leave_job(user)
        except PayrollError as e:
            return LeaveJob(success=False, errors=[str(e)])
        return LeaveJob(success=True, errors=None)


class PayrollRunMutationResult(graphene.Mutation):
    """Shared shape for payroll run mutations"""

    class Meta:
        abstract = True

    run = graphene.Field(PayrollRunType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    logger = logging.getLogger(__name__)

    @classmethod
    def _get_run(cls, info, run_id):
        business = get_business_context(info)
        if not business:
            return None, BUSINESS_REQUIRED
        run = PayrollRun.objects.select_related('business__owner').filter(business=business, run_id=run_id).first()
        if not run:
            return None, "Payroll run not found"
        return run, None

    @classmethod
    def _run_operation(cls, info, run_id, operation, *args):
        run, error = cls._get_run(info, run_id)
        if error:
            return cls(run=None, success=False, errors=[error])
        try:
            run = operation(run, *args)
        except PayrollError as e:
            return cls(run=run, success=False, errors=[str(e)])
        except ArcClientError as e:
            cls.logger.error("[Payroll] Chain error for run %s: %s", run_id, e)
            run.refresh_from_db()
            return cls(run=run, success=False, errors=["Arc network error, please retry"])
        return cls(run=run, success=True, errors=None)


class CreatePayrollRun(PayrollRunMutationResult):
    class Arguments:
        staff_ids = graphene.List(graphene.ID, required=True)

    @classmethod
    def mutate(cls, root, info, staff_ids):
        user = get_authenticated_user(info)
        business = get_business_context(info)
        if not business:
            return CreatePayrollRun(run=None, success=False, errors=[BUSINESS_REQUIRED])
        try:
            run = execution.create_payroll_run(business, user, staff_ids)
        except PayrollError as e:
            return CreatePayrollRun(run=None, success=False, errors=[str(e)])
        return CreatePayrollRun(run=run, success=True, errors=None)


class PreparePayrollRun(PayrollRunMutationResult):
    class Arguments:
        run_id = graphene.String(required=True)

    @classmethod
    def mutate(cls, root, info, run_id):
        return cls._run_operation(info, run_id, execution.prepare_payroll_run)


class SubmitPayrollRun(PayrollRunMutationResult):
    class Arguments:
        run_id = graphene.String(required=True)
        signed_transactions = graphene.List(
            graphene.String,
            required=True,
            description="Hex-encoded signed transactions, one per prepared step",
        )

    @classmethod
    def mutate(cls, root, info, run_id, signed_transactions):
        return cls._run_operation(info, run_id, execution.submit_payroll_run, signed_transactions)


class RefreshPayrollRun(PayrollRunMutationResult):
    class Arguments:
        run_id = graphene.String(required=True)

    @classmethod
    def mutate(cls, root, info, run_id):
        return cls._run_operation(info, run_id, execution.refresh_payroll_run)


class CancelPayrollRun(PayrollRunMutationResult):
    class Arguments:
        run_id = graphene.String(required=True)

    @classmethod
    def mutate(cls, root, info, run_id):
        return cls._run_operation(info, run_id, execution.cancel_payroll_run)


class Mutation(graphene.ObjectType):
    create_invite_code = CreateInviteCode.Field()
    register_with_code = RegisterWithCode.Field()
    approve_staff = ApproveStaff.Field()
    delete_staff = DeleteStaff.Field()
    update_staff_salary = UpdateStaffSalary.Field()
    update_payout_preference = UpdatePayoutPreference.Field()
    leave_job = LeaveJob.Field()
    create_payroll_run = CreatePayrollRun.Field()
    prepare_payroll_run = PreparePayrollRun.Field()
    submit_payroll_run = SubmitPayrollRun.Field()
    refresh_payroll_run = RefreshPayrollRun.Field()
    cancel_payroll_run = CancelPayrollRun.Field()
