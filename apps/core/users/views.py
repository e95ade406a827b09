from django.contrib.auth import authenticate, get_user_model
from django.contrib.auth.signals import user_logged_in, user_logged_out
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import api_role_required
from apps.core.utils.api import api_error, api_response, form_error_response, json_body, paginate

from .forms import LoginForm, SchoolUserForm
from .models import ApiToken, AuditLog


def serialize_user(user):
    return {
        'id': user.id,
        'username': user.username,
        'first_name': user.first_name,
        'last_name': user.last_name,
        'email': user.email,
        'role': user.role,
        'school': user.school_id,
        'is_active': user.is_active,
    }


def _serialize_audit_log(row):
    return {
        'id': row.id,
        'action': row.action,
        'user': row.user.username if row.user_id else None,
        'target_model': row.target_model,
        'target_id': row.target_id,
        'details': row.details,
        'method': row.method,
        'path': row.path,
        'created_at': row.created_at,
    }


@csrf_exempt
@require_POST
def api_login(request):
    form = LoginForm(json_body(request))
    if not form.is_valid():
        return form_error_response(form)

    user = authenticate(
        request,
        username=form.cleaned_data['username'],
        password=form.cleaned_data['password'],
    )
    if user is None:
        return api_error('Invalid username or password.', status=401)

    token, raw_key = ApiToken.issue(user)
    request.user = user
    request.auth_token = token
    user_logged_in.send(sender=user.__class__, request=request, user=user)

    return api_response({
        'token': raw_key,
        'token_type': 'Bearer',
        'expires_at': token.expires_at,
        'user': serialize_user(user),
    }, message='Login successful.')


@require_POST
@api_role_required(('superadmin', 'schooladmin', 'accountant', 'staff'))
def api_logout(request):
    token = getattr(request, 'auth_token', None)
    if token is None:
        return api_error('Logout requires a bearer token.', status=400)

    token.revoke()
    user_logged_out.send(sender=request.user.__class__, request=request, user=request.user)
    return api_response(message='Logged out.')


@require_GET
@api_role_required(('superadmin', 'schooladmin', 'accountant', 'staff'))
def api_me(request):
    return api_response(serialize_user(request.user))


@require_http_methods(['GET', 'POST'])
@api_role_required('schooladmin')
def user_list(request):
    school = request.current_school

    if request.method == 'POST':
        form = SchoolUserForm(json_body(request))
        if not form.is_valid():
            return form_error_response(form)

        user = get_user_model().objects.create_user(
            username=form.cleaned_data['username'],
            password=form.cleaned_data['password'],
            email=form.cleaned_data['email'],
            first_name=form.cleaned_data['first_name'],
            last_name=form.cleaned_data['last_name'],
            role=form.cleaned_data['role'],
            school=school,
        )
        log_audit_event(
            request=request,
            action='users.user_created',
            school=school,
            target=user,
            details=f"Role={user.role}",
        )
        return api_response(serialize_user(user), message='User created.', status=201)

    users = get_user_model().objects.filter(school=school).order_by('username')
    role = request.GET.get('role')
    if role:
        users = users.filter(role=role)
    rows, pagination = paginate(request, users, serialize_user)
    return api_response(rows, pagination=pagination)


@require_GET
@api_role_required('schooladmin')
def audit_log_list(request):
    logs = AuditLog.objects.filter(school=request.current_school).select_related('user')
    action = request.GET.get('action')
    if action:
        logs = logs.filter(action__startswith=action)
    rows, pagination = paginate(request, logs, _serialize_audit_log)
    return api_response(rows, pagination=pagination)
