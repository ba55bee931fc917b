from insightgate.services.security.secrets import ConnectionSecretBox

__all__ = ["ConnectionSecretBox"]
