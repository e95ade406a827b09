import logging

from django.contrib.auth import get_user_model
from django.db import transaction

from apps.core.academic_sessions.models import AcademicSession
from apps.core.academic_sessions.services import activate_session
from apps.core.accounting.models import Currency
from apps.core.accounting.services import DEFAULT_CURRENCY_NAMES, ensure_chart_of_accounts, get_base_currency

from .models import School

logger = logging.getLogger(__name__)


@transaction.atomic
def onboard_school(
    *,
    name,
    admin_username,
    admin_password,
    admin_email='',
    code='',
    address='',
    phone='',
    email='',
    timezone='UTC',
    base_currency='',
    session_name='',
    session_start_date=None,
    session_end_date=None,
):
    """
    Creates a school ready to bill: its school admin, base currency, chart
    of accounts and, when given, the first academic session.
    """
    school = School.objects.create(
        name=name,
        code=code or None,
        address=address,
        phone=phone,
        email=email,
        timezone=timezone or 'UTC',
    )

    if base_currency:
        currency_code = base_currency.strip().upper()
        currency_name, symbol = DEFAULT_CURRENCY_NAMES.get(currency_code, (currency_code, ''))
        Currency.objects.create(
            school=school,
            code=currency_code,
            name=currency_name,
            symbol=symbol,
            is_base=True,
        )
    currency = get_base_currency(school)
    ensure_chart_of_accounts(school)

    session = None
    if session_name:
        session = AcademicSession.objects.create(
            school=school,
            name=session_name,
            start_date=session_start_date,
            end_date=session_end_date,
            is_active=True,
        )
        activate_session(school=school, session=session)

    admin_user = get_user_model().objects.create_user(
        username=admin_username,
        email=admin_email,
        password=admin_password,
        role='schooladmin',
        school=school,
    )
    logger.info('Onboarded school %s with admin %s', school.code, admin_user.username)
    return {'school': school, 'admin_user': admin_user, 'session': session, 'base_currency': currency}
