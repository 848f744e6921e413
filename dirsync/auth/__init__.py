"""Client-credentials token acquisition for the directory provider."""

from dirsync.auth.client_credentials import AccessToken, ClientCredentialsAuth

__all__ = ["AccessToken", "ClientCredentialsAuth"]
