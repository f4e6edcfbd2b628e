from .db import db
from .account import Account, Role, account_roles
from .security_settings import SecuritySettings
from .security_event import SecurityEvent
from .session import Session
from .login_challenge import LoginChallenge
from .otp_challenge import OtpChallenge
from .rate_limit_bucket import RateLimitBucket
from .blocked_ip import BlockedIp
from .password_history import PasswordHistory
from .registration_otp import RegistrationOtp
from .registration_request import RegistrationRequest
from .email_log import EmailLog
