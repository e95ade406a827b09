from django.core.exceptions import ValidationError
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from apps.core.academic_sessions.models import Term
from apps.core.academics.models import SchoolClass
from apps.core.students.models import Student
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import FINANCE_ROLES, READ_ROLES, api_role_required
from apps.core.utils.api import (
    api_error,
    api_response,
    form_error_response,
    json_body,
    merge_instance_data,
    paginate,
    parse_date_param,
    parse_decimal,
    query_int,
    validation_message,
)

from .forms import (
    FeeAssignForm,
    FeePaymentForm,
    FeeRefundForm,
    FeeStructureForm,
    FeeWaiverForm,
    GenerateAnnualFeesForm,
    InvoiceStructureForm,
    ManualAdjustmentForm,
    OpeningBalanceForm,
    ReasonForm,
    WaiverCategoryForm,
)
from .ledger import (
    reconcile_student_balance,
    recalculate_student_balance,
    reverse_student_transaction,
    student_statement,
)
from .models import (
    FeePayment,
    FeeRefund,
    FeeStructure,
    FeeWaiver,
    InvoiceStructure,
    StudentFeeAssignment,
    StudentTransaction,
    WaiverCategory,
)
from .services import (
    apply_manual_adjustment,
    assign_fee_structure,
    collect_payment,
    generate_annual_fees,
    grant_fee_waiver,
    outstanding_balances,
    outstanding_summary,
    record_opening_balance,
    refund_payment,
    reverse_payment,
    save_invoice_structure,
    student_outstanding_summary,
    students_with_opening_balance,
)

FEE_STRUCTURE_FIELDS = FeeStructureForm._meta.fields
INVOICE_STRUCTURE_FIELDS = InvoiceStructureForm._meta.fields
WAIVER_CATEGORY_FIELDS = WaiverCategoryForm._meta.fields


def serialize_invoice_structure(structure):
    return {
        'id': structure.id,
        'name': structure.name,
        'school_class': structure.school_class_id,
        'class_name': structure.school_class.display_name,
        'term': structure.term_id,
        'term_label': structure.term.label,
        'currency': structure.currency.code,
        'total_amount': structure.total_amount,
        'notes': structure.notes,
        'is_active': structure.is_active,
        'items': [
            {
                'id': item.id,
                'item_name': item.item_name,
                'amount': item.amount,
                'description': item.description,
            }
            for item in structure.items.all()
        ],
    }


def serialize_fee_structure(fee_structure):
    return {
        'id': fee_structure.id,
        'name': fee_structure.name,
        'description': fee_structure.description,
        'amount': fee_structure.amount,
        'currency': fee_structure.currency.code,
        'fee_type': fee_structure.fee_type,
        'is_active': fee_structure.is_active,
    }


def serialize_assignment(assignment):
    paid = assignment.paid_amount
    return {
        'id': assignment.id,
        'student': assignment.student_id,
        'admission_number': assignment.student.admission_number,
        'category': assignment.category,
        'description': assignment.description,
        'fee_structure': assignment.fee_structure_id,
        'term': assignment.term.label if assignment.term_id else None,
        'amount': assignment.amount,
        'paid': paid,
        'due': assignment.due_amount,
        'due_date': assignment.due_date,
        'status': assignment.status,
        'is_cancelled': assignment.is_cancelled,
        'created_at': assignment.created_at,
    }


def serialize_payment(payment, include_allocations=False):
    data = {
        'id': payment.id,
        'receipt_number': payment.receipt_number,
        'student': payment.student_id,
        'admission_number': payment.student.admission_number,
        'student_name': payment.student.full_name,
        'category': payment.category,
        'term': payment.term.label if payment.term_id else None,
        'hostel': payment.hostel_id,
        'hostel_name': payment.hostel.name if payment.hostel_id else None,
        'currency': payment.currency.code,
        'amount': payment.amount,
        'exchange_rate': payment.exchange_rate,
        'base_amount': payment.base_amount,
        'payment_method': payment.payment_method,
        'payment_date': payment.payment_date,
        'reference_number': payment.reference_number,
        'notes': payment.notes,
        'status': payment.status,
        'refunded_amount': payment.refunded_amount,
        'reversal_reason': payment.reversal_reason,
        'created_at': payment.created_at,
    }
    if include_allocations:
        data['allocations'] = [
            {
                'assignment': row.assignment_id,
                'description': row.assignment.description,
                'amount': row.amount,
                'is_release': row.is_release,
            }
            for row in payment.allocations.select_related('assignment')
        ]
    return data


def serialize_refund(refund):
    return {
        'id': refund.id,
        'payment': refund.payment_id,
        'receipt_number': refund.payment.receipt_number,
        'student': refund.student_id,
        'amount': refund.amount,
        'reason': refund.reason,
        'refund_date': refund.refund_date,
        'created_at': refund.created_at,
    }


def serialize_waiver_category(category):
    return {
        'id': category.id,
        'name': category.name,
        'description': category.description,
        'is_active': category.is_active,
    }


def serialize_waiver(waiver):
    return {
        'id': waiver.id,
        'student': waiver.student_id,
        'admission_number': waiver.student.admission_number,
        'category': waiver.category.name,
        'waiver_type': waiver.waiver_type,
        'currency': waiver.currency.code,
        'amount': waiver.amount,
        'base_amount': waiver.base_amount,
        'reason': waiver.reason,
        'notes': waiver.notes,
        'term': waiver.term.label if waiver.term_id else None,
        'created_at': waiver.created_at,
    }


def serialize_transaction(row):
    return {
        'id': row.id,
        'type': row.transaction_type,
        'category': row.category,
        'amount': row.amount,
        'currency': row.currency.code,
        'original_amount': row.original_amount,
        'exchange_rate': row.exchange_rate,
        'description': row.description,
        'reference': row.reference,
        'balance_after': row.balance_after,
        'transaction_date': row.transaction_date,
        'is_reversed': row.is_reversed,
        'reversal_of': row.reversal_of_id,
    }


def _serialize_outstanding(balance):
    student = balance.student
    return {
        'student_id': student.id,
        'admission_number': student.admission_number,
        'student_name': student.full_name,
        'balance': balance.current_balance,
        'outstanding': balance.outstanding,
    }


# Invoice structures

def _save_invoice_structure_from_payload(request, school, payload, structure=None):
    if structure is None:
        data = merge_instance_data(InvoiceStructure(), INVOICE_STRUCTURE_FIELDS, payload)
        form = InvoiceStructureForm(data, school=school)
    else:
        data = merge_instance_data(structure, INVOICE_STRUCTURE_FIELDS, payload)
        form = InvoiceStructureForm(data, instance=structure, school=school)
    if not form.is_valid():
        return None, form_error_response(form)

    items = payload.get('items')
    if items is not None and not isinstance(items, list):
        return None, api_error('items must be a list.')
    total_amount = payload.get('total_amount')
    if structure is not None and items is None:
        if structure.items.exists() and total_amount is not None:
            return None, api_error('This structure is itemised. Update the items to change the total.')
        if total_amount is None:
            total_amount = structure.total_amount

    try:
        structure = save_invoice_structure(
            school=school,
            school_class=form.cleaned_data['school_class'],
            term=form.cleaned_data['term'],
            currency=form.cleaned_data.get('currency'),
            total_amount=total_amount,
            items=items,
            notes=form.cleaned_data.get('notes') or '',
            name=form.cleaned_data.get('name') or '',
            structure=structure,
            created_by=request.user,
        )
    except ValidationError as exc:
        return None, api_error(validation_message(exc))
    return structure, None


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def invoice_structure_list(request):
    school = request.current_school

    if request.method == 'POST':
        structure, error = _save_invoice_structure_from_payload(request, school, json_body(request))
        if error is not None:
            return error
        log_audit_event(
            request=request,
            action='fees.invoice_structure_created',
            school=school,
            target=structure,
            details=f"Structure={structure}, Total={structure.total_amount}",
        )
        return api_response(serialize_invoice_structure(structure), message='Invoice structure created.', status=201)

    structures = InvoiceStructure.objects.filter(school=school).select_related(
        'school_class',
        'term__session',
        'currency',
    ).prefetch_related('items')
    if request.GET.get('include_inactive') != '1':
        structures = structures.filter(is_active=True)
    class_id = query_int(request, 'class_id')
    if class_id:
        structures = structures.filter(school_class_id=class_id)
    term_id = query_int(request, 'term_id')
    if term_id:
        structures = structures.filter(term_id=term_id)
    return api_response([serialize_invoice_structure(row) for row in structures])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def invoice_structure_detail(request, pk):
    school = request.current_school
    structure = get_object_or_404(InvoiceStructure, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_invoice_structure(structure))

    if request.method == 'DELETE':
        structure.delete()
        log_audit_event(
            request=request,
            action='fees.invoice_structure_deactivated',
            school=school,
            target=structure,
            details=f"Structure={structure}",
        )
        return api_response(message='Invoice structure deactivated.')

    structure, error = _save_invoice_structure_from_payload(request, school, json_body(request), structure)
    if error is not None:
        return error
    log_audit_event(
        request=request,
        action='fees.invoice_structure_updated',
        school=school,
        target=structure,
        details=f"Structure={structure}, Total={structure.total_amount}",
    )
    return api_response(serialize_invoice_structure(structure), message='Invoice structure updated.')


# Fee structures

@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def fee_structure_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(FeeStructure(), FEE_STRUCTURE_FIELDS, json_body(request))
        form = FeeStructureForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        fee_structure = form.save()
        log_audit_event(
            request=request,
            action='fees.fee_structure_created',
            school=school,
            target=fee_structure,
            details=f"Name={fee_structure.name}, Amount={fee_structure.amount}",
        )
        return api_response(serialize_fee_structure(fee_structure), message='Fee structure created.', status=201)

    structures = FeeStructure.objects.filter(school=school).select_related('currency')
    if request.GET.get('include_inactive') != '1':
        structures = structures.filter(is_active=True)
    fee_type = request.GET.get('fee_type')
    if fee_type:
        structures = structures.filter(fee_type=fee_type)
    return api_response([serialize_fee_structure(row) for row in structures])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def fee_structure_detail(request, pk):
    school = request.current_school
    fee_structure = get_object_or_404(FeeStructure, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_fee_structure(fee_structure))

    if request.method == 'DELETE':
        fee_structure.delete()
        log_audit_event(
            request=request,
            action='fees.fee_structure_deactivated',
            school=school,
            target=fee_structure,
            details=f"Name={fee_structure.name}",
        )
        return api_response(message='Fee structure deactivated.')

    data = merge_instance_data(fee_structure, FEE_STRUCTURE_FIELDS, json_body(request))
    form = FeeStructureForm(data, instance=fee_structure, school=school)
    if not form.is_valid():
        return form_error_response(form)
    fee_structure = form.save()
    log_audit_event(
        request=request,
        action='fees.fee_structure_updated',
        school=school,
        target=fee_structure,
        details=f"Name={fee_structure.name}, Amount={fee_structure.amount}",
    )
    return api_response(serialize_fee_structure(fee_structure), message='Fee structure updated.')


@require_POST
@api_role_required(FINANCE_ROLES)
def fee_structure_assign(request, pk):
    school = request.current_school
    fee_structure = get_object_or_404(FeeStructure, pk=pk, school=school)
    form = FeeAssignForm(json_body(request), school=school)
    if not form.is_valid():
        return form_error_response(form)

    try:
        result = assign_fee_structure(
            fee_structure=fee_structure,
            students=form.selected_students(current_term=request.current_term),
            session=form.cleaned_data.get('session'),
            term=form.cleaned_data.get('term'),
            due_date=form.cleaned_data.get('due_date'),
            created_by=request.user,
        )
    except ValidationError as exc:
        return api_error(validation_message(exc))

    log_audit_event(
        request=request,
        action='fees.fee_structure_assigned',
        school=school,
        target=fee_structure,
        details=f"Created={len(result['created'])}, Skipped={len(result['skipped'])}",
    )
    return api_response(
        {
            'created': [serialize_assignment(row) for row in result['created']],
            'skipped': result['skipped'],
        },
        message=f"Fee assigned to {len(result['created'])} student(s).",
        status=201 if result['created'] else 200,
    )


@require_POST
@api_role_required(FINANCE_ROLES)
def fee_structure_generate_annual(request, pk):
    school = request.current_school
    fee_structure = get_object_or_404(FeeStructure, pk=pk, school=school)
    form = GenerateAnnualFeesForm(json_body(request), school=school)
    if not form.is_valid():
        return form_error_response(form)

    try:
        result = generate_annual_fees(
            fee_structure=fee_structure,
            session=form.cleaned_data['session'],
            due_date=form.cleaned_data.get('due_date'),
            created_by=request.user,
        )
    except ValidationError as exc:
        return api_error(validation_message(exc))

    log_audit_event(
        request=request,
        action='fees.annual_fees_generated',
        school=school,
        target=fee_structure,
        details=f"Session={form.cleaned_data['session'].name}, Created={len(result['created'])}",
    )
    return api_response(
        {'created': len(result['created']), 'skipped': len(result['skipped'])},
        message=f"Annual fee generated for {len(result['created'])} student(s).",
    )


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def assignment_list(request):
    assignments = StudentFeeAssignment.objects.filter(school=request.current_school).select_related(
        'student',
        'term__session',
    )
    student_id = query_int(request, 'student_id')
    if student_id:
        assignments = assignments.filter(student_id=student_id)
    category = request.GET.get('category')
    if category:
        assignments = assignments.filter(category=category)
    if request.GET.get('include_cancelled') != '1':
        assignments = assignments.filter(is_cancelled=False)

    rows, pagination = paginate(request, assignments.order_by('-created_at', '-id'), serialize_assignment)
    return api_response(rows, pagination=pagination)


# Payments

def collect_payment_from_request(request, school, payload, category=None):
    """Shared by the fee and boarding payment endpoints. Returns (payment, error_response)."""
    if category:
        payload = dict(payload, category=category)
    form = FeePaymentForm(payload, school=school)
    if not form.is_valid():
        return None, form_error_response(form)

    try:
        payment = collect_payment(
            student=form.cleaned_data['student'],
            amount=form.cleaned_data['amount'],
            payment_method=form.cleaned_data['payment_method'],
            category=form.cleaned_data['category'],
            currency=form.cleaned_data.get('currency'),
            term=form.cleaned_data.get('term') or request.current_term,
            hostel=form.cleaned_data.get('hostel'),
            fee_assignment=form.cleaned_data.get('fee_assignment'),
            payment_date=form.cleaned_data.get('payment_date'),
            reference_number=form.cleaned_data.get('reference_number') or '',
            notes=form.cleaned_data.get('notes') or '',
            received_by=request.user,
        )
    except ValidationError as exc:
        return None, api_error(validation_message(exc))

    log_audit_event(
        request=request,
        action='fees.payment_collected',
        school=school,
        target=payment,
        details=(
            f"Receipt={payment.receipt_number}, Amount={payment.amount} {payment.currency.code}, "
            f"Base={payment.base_amount}"
        ),
    )
    return payment, None


def filter_payments(request, payments):
    student_id = query_int(request, 'student_id')
    if student_id:
        payments = payments.filter(student_id=student_id)
    status = request.GET.get('status')
    if status:
        payments = payments.filter(status=status)
    method = request.GET.get('payment_method')
    if method:
        payments = payments.filter(payment_method=method)
    date_from = parse_date_param(request.GET.get('date_from'), 'date_from')
    date_to = parse_date_param(request.GET.get('date_to'), 'date_to')
    if date_from:
        payments = payments.filter(payment_date__gte=date_from)
    if date_to:
        payments = payments.filter(payment_date__lte=date_to)
    search = (request.GET.get('search') or '').strip()
    if search:
        payments = payments.filter(
            Q(receipt_number__icontains=search) | Q(student__admission_number__icontains=search)
        )
    return payments


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def payment_list(request):
    school = request.current_school

    if request.method == 'POST':
        payment, error = collect_payment_from_request(request, school, json_body(request))
        if error is not None:
            return error
        return api_response(
            serialize_payment(payment, include_allocations=True),
            message=f'Payment recorded. Receipt {payment.receipt_number}.',
            status=201,
        )

    payments = FeePayment.objects.filter(school=school).select_related(
        'student',
        'currency',
        'hostel',
        'term__session',
    )
    category = request.GET.get('category')
    if category:
        payments = payments.filter(category=category)
    rows, pagination = paginate(request, filter_payments(request, payments), serialize_payment)
    return api_response(rows, pagination=pagination)


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def payment_detail(request, pk):
    payment = get_object_or_404(FeePayment, pk=pk, school=request.current_school)
    return api_response(serialize_payment(payment, include_allocations=True))


@require_POST
@api_role_required(FINANCE_ROLES)
def payment_reverse(request, pk):
    school = request.current_school
    payment = get_object_or_404(FeePayment, pk=pk, school=school)
    form = ReasonForm(json_body(request))
    if not form.is_valid():
        return form_error_response(form, message='A reversal reason is required.')

    try:
        payment = reverse_payment(payment=payment, reason=form.cleaned_data['reason'], reversed_by=request.user)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='fees.payment_reversed',
        school=school,
        target=payment,
        details=f"Receipt={payment.receipt_number}, Reason={payment.reversal_reason}",
    )
    return api_response(serialize_payment(payment), message='Payment reversed.')


@require_POST
@api_role_required(FINANCE_ROLES)
def payment_refund(request, pk):
    school = request.current_school
    payment = get_object_or_404(FeePayment, pk=pk, school=school)
    form = FeeRefundForm(json_body(request))
    if not form.is_valid():
        return form_error_response(form)

    try:
        refund = refund_payment(
            payment=payment,
            amount=form.cleaned_data['amount'],
            reason=form.cleaned_data['reason'],
            refund_date=form.cleaned_data.get('refund_date'),
            approved_by=request.user,
        )
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='fees.payment_refunded',
        school=school,
        target=refund,
        details=f"Receipt={payment.receipt_number}, Amount={refund.amount}",
    )
    return api_response(serialize_refund(refund), message='Refund recorded.', status=201)


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def refund_list(request):
    refunds = FeeRefund.objects.filter(school=request.current_school).select_related('payment')
    student_id = query_int(request, 'student_id')
    if student_id:
        refunds = refunds.filter(student_id=student_id)
    rows, pagination = paginate(request, refunds, serialize_refund)
    return api_response(rows, pagination=pagination)


# Waivers

@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def waiver_category_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(WaiverCategory(), WAIVER_CATEGORY_FIELDS, json_body(request))
        form = WaiverCategoryForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        category = form.save()
        log_audit_event(
            request=request,
            action='fees.waiver_category_created',
            school=school,
            target=category,
            details=f"Name={category.name}",
        )
        return api_response(serialize_waiver_category(category), message='Waiver category created.', status=201)

    categories = WaiverCategory.objects.filter(school=school)
    if request.GET.get('include_inactive') != '1':
        categories = categories.filter(is_active=True)
    return api_response([serialize_waiver_category(row) for row in categories])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def waiver_category_detail(request, pk):
    school = request.current_school
    category = get_object_or_404(WaiverCategory, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_waiver_category(category))

    if request.method == 'DELETE':
        category.delete()
        log_audit_event(
            request=request,
            action='fees.waiver_category_deactivated',
            school=school,
            target=category,
            details=f"Name={category.name}",
        )
        return api_response(message='Waiver category deactivated.')

    data = merge_instance_data(category, WAIVER_CATEGORY_FIELDS, json_body(request))
    form = WaiverCategoryForm(data, instance=category, school=school)
    if not form.is_valid():
        return form_error_response(form)
    category = form.save()
    log_audit_event(
        request=request,
        action='fees.waiver_category_updated',
        school=school,
        target=category,
        details=f"Name={category.name}",
    )
    return api_response(serialize_waiver_category(category), message='Waiver category updated.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def waiver_list(request):
    school = request.current_school

    if request.method == 'POST':
        form = FeeWaiverForm(json_body(request), school=school)
        if not form.is_valid():
            return form_error_response(form)
        try:
            waiver = grant_fee_waiver(
                student=form.cleaned_data['student'],
                category=form.cleaned_data['category'],
                amount=form.cleaned_data['amount'],
                waiver_type=form.cleaned_data['waiver_type'],
                reason=form.cleaned_data['reason'],
                term=form.cleaned_data.get('term'),
                notes=form.cleaned_data.get('notes') or '',
                currency=form.cleaned_data.get('currency'),
                granted_by=request.user,
            )
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='fees.waiver_granted',
            school=school,
            target=waiver,
            details=f"Student={waiver.student.admission_number}, Amount={waiver.base_amount}",
        )
        return api_response(serialize_waiver(waiver), message='Waiver granted.', status=201)

    waivers = FeeWaiver.objects.filter(school=school).select_related('student', 'category', 'currency', 'term__session')
    student_id = query_int(request, 'student_id')
    if student_id:
        waivers = waivers.filter(student_id=student_id)
    rows, pagination = paginate(request, waivers, serialize_waiver)
    return api_response(rows, pagination=pagination)


# Student balances (routed under /api/students/)

def _school_student(request, pk):
    return get_object_or_404(Student, pk=pk, school=request.current_school)


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def student_balance(request, pk):
    return api_response(student_outstanding_summary(_school_student(request, pk)))


@require_POST
@api_role_required(FINANCE_ROLES)
def student_balance_recalculate(request, pk):
    student = _school_student(request, pk)
    result = recalculate_student_balance(student)
    log_audit_event(
        request=request,
        action='fees.balance_recalculated',
        school=request.current_school,
        target=student,
        details=f"Previous={result['previous_balance']}, Recalculated={result['recalculated_balance']}",
    )
    return api_response(result, message='Balance recalculated.')


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def student_balance_reconcile(request, pk):
    return api_response(reconcile_student_balance(_school_student(request, pk)))


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def student_transactions(request, pk):
    student = _school_student(request, pk)
    start = parse_date_param(request.GET.get('start'), 'start')
    end = parse_date_param(request.GET.get('end'), 'end')
    if start and end and end < start:
        return api_error('end must be on or after start.')
    return api_response(student_statement(student, start=start, end=end))


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def student_opening_balance(request, pk):
    school = request.current_school
    student = _school_student(request, pk)

    if request.method == 'GET':
        found = students_with_opening_balance(school=school, student_ids=[student.id]).get(student.id)
        return api_response(found)

    form = OpeningBalanceForm(json_body(request), school=school)
    if not form.is_valid():
        return form_error_response(form)
    try:
        assignment = record_opening_balance(
            student=student,
            amount=form.cleaned_data['amount'],
            currency=form.cleaned_data.get('currency'),
            as_of=form.cleaned_data.get('as_of'),
            notes=form.cleaned_data.get('notes') or '',
            created_by=request.user,
        )
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='fees.opening_balance_recorded',
        school=school,
        target=student,
        details=f"Amount={assignment.amount}",
    )
    return api_response(serialize_assignment(assignment), message='Opening balance recorded.', status=201)


@require_POST
@api_role_required(FINANCE_ROLES)
def student_adjustment(request, pk):
    school = request.current_school
    student = _school_student(request, pk)
    payload = json_body(request)
    if 'adjustment_type' in payload:
        payload['adjustment_type'] = str(payload['adjustment_type']).lower()
    form = ManualAdjustmentForm(payload, school=school)
    if not form.is_valid():
        return form_error_response(form)
    try:
        row = apply_manual_adjustment(
            student=student,
            adjustment_type=form.cleaned_data['adjustment_type'],
            amount=form.cleaned_data['amount'],
            description=form.cleaned_data['description'],
            reference=form.cleaned_data.get('reference') or '',
            currency=form.cleaned_data.get('currency'),
            created_by=request.user,
        )
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='fees.manual_adjustment',
        school=school,
        target=student,
        details=f"{row.transaction_type} {row.amount} Ref={row.reference}",
    )
    return api_response(serialize_transaction(row), message='Balance adjusted.', status=201)


@require_POST
@api_role_required(FINANCE_ROLES)
def transaction_reverse(request, pk):
    school = request.current_school
    row = get_object_or_404(StudentTransaction, pk=pk, school=school)
    payload = json_body(request)
    try:
        reversal = reverse_student_transaction(
            transaction=row,
            reason=payload.get('reason') or '',
            reversed_by=request.user,
        )
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='fees.transaction_reversed',
        school=school,
        target=row,
        details=f"Reversal={reversal.id}",
    )
    return api_response(serialize_transaction(reversal), message='Transaction reversed.')


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def outstanding_balance_list(request):
    school = request.current_school
    school_class = None
    class_id = query_int(request, 'class_id')
    if class_id:
        school_class = get_object_or_404(SchoolClass, pk=class_id, school=school)
    term = None
    term_id = query_int(request, 'term_id')
    if term_id:
        term = get_object_or_404(Term, pk=term_id, school=school)
    min_amount = request.GET.get('min_amount')

    balances = outstanding_balances(
        school=school,
        search=request.GET.get('search', ''),
        school_class=school_class,
        term=term,
        min_amount=parse_decimal(min_amount, 'min_amount') if min_amount else None,
    )
    rows, pagination = paginate(request, balances, _serialize_outstanding)
    return api_response(rows, pagination=pagination, summary=outstanding_summary(balances))


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def opening_balance_lookup(request):
    raw_ids = [value.strip() for value in request.GET.get('ids', '').split(',') if value.strip()]
    if not all(value.isdigit() for value in raw_ids):
        return api_error('ids must be a comma-separated list of student ids.')
    found = students_with_opening_balance(
        school=request.current_school,
        student_ids=[int(value) for value in raw_ids],
    )
    return api_response({str(student_id): row for student_id, row in found.items()})
