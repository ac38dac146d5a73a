import secrets


def generate_secure_token() -> str:
    """Opaque download token, safe to use verbatim as a URL path segment."""
    return secrets.token_hex(32)
