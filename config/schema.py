from users import schema as users_schema
from payroll import schema as payroll_schema
from blockchain import schema as blockchain_schema
import graphene


class Query(users_schema.Query, payroll_schema.Query, blockchain_schema.Query, graphene.ObjectType):
	pass


class Mutation(
	users_schema.Mutation,
	payroll_schema.Mutation,
	blockchain_schema.Mutation,
	graphene.ObjectType
):
	pass


# Register all types
types = [
	users_schema.UserType,
	users_schema.BusinessType,
	payroll_schema.InviteCodeType,
	payroll_schema.BusinessStaffMemberType,
	payroll_schema.EmploymentType,
	payroll_schema.PayrollRunType,
	payroll_schema.PayrollItemType,
	blockchain_schema.TreasuryType,
]

schema = graphene.Schema(
	query=Query,
	mutation=Mutation,
	types=types
)

__all__ = ['schema']
