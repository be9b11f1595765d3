from backend.app.models.mfa_profile import MfaProfileRecord
from backend.app.models.trusted_device import TrustedDevice
from backend.app.models.login_attempt import LoginAttempt

__all__ = ["MfaProfileRecord", "TrustedDevice", "LoginAttempt"]
