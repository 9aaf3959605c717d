# subscriptions/decorators.py
"""
View decorators for authentication, usage limits and feature access.

Usage:
    @api_login_required
    def subscription_status(request):
        ...

    @usage_required('cvs')
    def tailor_cv(request):
        ...

    @feature_required('ai_avatar_interviews')
    def start_avatar_session(request):
        ...
"""

import logging
from functools import wraps

from django.http import JsonResponse

logger = logging.getLogger(__name__)


def api_login_required(view_func):
    """JSON 401 for anonymous users instead of a login redirect."""
    @wraps(view_func)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({
                'ok': False,
                'code': 'AUTH_REQUIRED',
                'reason': 'Please log in to continue.',
            }, status=401)
        return view_func(request, *args, **kwargs)
    return wrapper


def usage_required(resource, access_control=None):
    """
    Gate a view on a metered resource.

    One use is reserved atomically before the view runs. If the view raises
    or answers with a 4xx/5xx status the reservation is released, so failed
    actions never consume quota. Successful uses are added to the monthly
    snapshot.

    Usage:
        @usage_required('applications')
        def track_application(request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            from subscriptions.access_control import AccessControl

            if not request.user.is_authenticated:
                return api_login_required(view_func)(request, *args, **kwargs)

            access = access_control or AccessControl()
            result = access.try_consume_usage(request.user, resource, record_snapshot=False)
            if not result['consumed']:
                return _usage_denied(result, resource)

            request.usage_check = result
            try:
                response = view_func(request, *args, **kwargs)
            except Exception:
                access.release_usage(request.user, resource)
                raise

            if response.status_code >= 400:
                access.release_usage(request.user, resource)
            else:
                access.record_snapshot(request.user, resource)
            return response
        return wrapper
    return decorator


def feature_required(feature, access_control=None):
    """
    Gate a view on a tier feature.

    Usage:
        @feature_required('ai_avatar_interviews')
        def avatar_interview(request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            from subscriptions.access_control import AccessControl

            if not request.user.is_authenticated:
                return api_login_required(view_func)(request, *args, **kwargs)

            access = access_control or AccessControl()
            result = access.check_feature_access(request.user, feature)
            if not result['has_access']:
                status = 402 if result['reason'] == 'no_subscription' else 403
                return JsonResponse({
                    'ok': False,
                    'code': (result['reason'] or 'FEATURE_NOT_INCLUDED').upper(),
                    'reason': 'Your plan does not include this feature.',
                    'data': result,
                }, status=status)

            request.feature_access = result
            return view_func(request, *args, **kwargs)
        return wrapper
    return decorator


def _usage_denied(result, resource):
    reason = result.get('reason')
    if reason == 'NO_SUBSCRIPTION':
        message, status = 'A subscription is required for this feature.', 402
    elif reason == 'LIMIT_EXCEEDED':
        message, status = 'Monthly usage limit reached. Please upgrade your plan.', 403
    else:
        message, status = 'Your subscription is not active.', 403

    logger.info(f"Usage denied for {resource}: {reason}")
    return JsonResponse({
        'ok': False,
        'code': reason,
        'reason': message,
        'data': result,
    }, status=status)
