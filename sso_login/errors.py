"""
Login error taxonomy. Leaf components raise these; login_flow turns them into LoginOutcome values.
"""


class LoginError(Exception):
    """Base class; `code` is the best-effort error code shown to the user."""

    code = "unknown"

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ConfigurationError(LoginError):
    code = "configuration"


class CsrfFailure(LoginError):
    code = "invalid_state"


class InvalidIdToken(LoginError):
    code = "invalid_id_token"


class LoginFlowValidation(LoginError):
    code = "login_flow"


class BeforeLoginRejected(LoginError):
    code = "before_login"


class CouldNotCreateUser(LoginError):
    code = "could_not_create_user"


class DuplicateIdentity(CouldNotCreateUser):
    """Another request created the mapping for this subject first."""

    code = "duplicate_identity"


class RegistrationNotEnabled(LoginError):
    code = "registration_not_enabled"


class EmailNotVerified(LoginError):
    """Not a hard failure: the user is sent to the resend-verification page."""

    code = "email_not_verified"

    def __init__(self, userinfo: dict, message: str = "Email address is not verified"):
        super().__init__(message)
        self.userinfo = userinfo
