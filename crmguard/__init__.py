"""crmguard — CRM security monitoring and controlled PII disclosure."""

__version__ = "1.0.0"
