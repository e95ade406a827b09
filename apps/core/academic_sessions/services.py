import logging
import re

from django.core.exceptions import ValidationError
from django.db import transaction

from apps.core.academic_sessions.models import AcademicSession, Term

logger = logging.getLogger(__name__)

_TERM_NUMBER_RE = re.compile(r'^(?:term\s*)?(\d)$', re.IGNORECASE)


def activate_session(*, school, session):
    if session.school_id != school.id:
        raise ValidationError('Session does not belong to the provided school.')

    with transaction.atomic():
        AcademicSession.objects.filter(
            school=school,
            is_active=True,
        ).exclude(pk=session.pk).update(is_active=False)

        if not session.is_active:
            session.is_active = True
            session.save(update_fields=['is_active'])

        if school.current_session_id != session.id:
            school.current_session = session
            school.save(update_fields=['current_session'])

    logger.info('Activated session %s for school %s', session.name, school.code)
    return session


def activate_term(*, school, term):
    if term.school_id != school.id:
        raise ValidationError('Term does not belong to the provided school.')

    with transaction.atomic():
        Term.objects.filter(school=school, is_current=True).exclude(pk=term.pk).update(is_current=False)

        if not term.is_current:
            term.is_current = True
            term.save(update_fields=['is_current'])

        if school.current_session_id != term.session_id:
            activate_session(school=school, session=term.session)
            school.refresh_from_db(fields=['current_session'])

        if school.current_term_id != term.id:
            school.current_term = term
            school.save(update_fields=['current_term'])

    logger.info('Activated %s for school %s', term.label, school.code)
    return term


def parse_term_number(value):
    """Accepts 1, "1", "Term 1" or "term1" and returns the term number."""
    match = _TERM_NUMBER_RE.match(str(value or '').strip())
    if not match:
        raise ValidationError(f"Unrecognised term '{value}'. Use 'Term 1', 'Term 2' or 'Term 3'.")
    return int(match.group(1))


def resolve_term(*, school, term=None, academic_year=None, term_id=None):
    """
    Resolves a term by id, or by term label plus academic year name.
    Falls back to the school's current term when nothing is given.
    """
    terms = Term.objects.filter(school=school).select_related('session')

    if term_id:
        found = terms.filter(pk=term_id).first()
        if not found:
            raise ValidationError('Term not found.')
        return found

    if term is None and academic_year is None:
        if not school.current_term_id:
            raise ValidationError('No current term is configured for this school.')
        return school.current_term

    if term is None or not academic_year:
        raise ValidationError('Both term and academic_year are required.')

    found = terms.filter(number=parse_term_number(term), session__name=str(academic_year).strip()).first()
    if not found:
        raise ValidationError(f"Term '{term}' for academic year '{academic_year}' does not exist.")
    return found
