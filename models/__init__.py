from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .lockout import AccountLockout, IpLockout
from .ip_rate_limit import IpRateLimit
from .two_factor import TwoFactorAuth, BackupCode
from .password_history import PasswordHistory
from .system_setting import SystemSetting
