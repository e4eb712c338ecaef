from .health import health_bp
from .auth import auth_bp
from .two_factor import two_factor_bp
from .sessions import sessions_bp
from .lockout import lockout_bp
