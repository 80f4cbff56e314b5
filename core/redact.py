"""
core/redact.py -- Log-safe forms of personal data.

Shared by auth/ (flow logging) and mailer/ (delivery logging) so every log
line that names an address masks it the same way.
"""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
