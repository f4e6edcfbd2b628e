from .health import health_bp
from .auth import auth_bp
from .mfa import mfa_bp
from .registration import registration_bp
from .admin import admin_bp
from .security import security_bp
