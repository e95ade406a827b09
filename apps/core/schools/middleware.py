class CurrentSchoolMiddleware:
    """
    Resolves tenant context for every request from the authenticated user.
    Must run after token and session authentication.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.current_school = None
        request.current_session = None
        request.current_term = None

        user = getattr(request, 'user', None)
        if user and user.is_authenticated and getattr(user, 'school_id', None):
            school = user.school
            if school.is_active:
                request.current_school = school
                request.current_session = school.current_session
                request.current_term = school.current_term

        return self.get_response(request)
