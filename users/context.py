"""
Request context helpers for GraphQL resolvers.

The authenticated wallet decides what a caller may touch: business owners act
on their own business, staff act on their own membership.
"""
import logging

logger = logging.getLogger(__name__)


def get_authenticated_user(info):
    user = getattr(info.context, 'user', None)
    if not (user and getattr(user, 'is_authenticated', False)):
        return None
    return user


def get_business_for_user(user):
    """Business owned by `user`, or None"""
    from .models import Business

    if not user:
        return None
    return Business.objects.filter(owner=user).first()


def get_business_context(info):
    """Business owned by the authenticated caller, or None"""
    user = get_authenticated_user(info)
    if not user:
        return None
    business = get_business_for_user(user)
    if not business:
        logger.info("User %s has no business context", getattr(user, 'id', None))
    return business


def get_staff_membership(user):
    """The caller's current staff membership, or None"""
    from payroll.models import StaffMember

    if not user:
        return None
    return StaffMember.objects.select_related('business').filter(user=user).first()
