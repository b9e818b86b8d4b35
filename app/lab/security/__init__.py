from app.lab.security.api_keys import APIKeyManager

__all__ = ["APIKeyManager"]
