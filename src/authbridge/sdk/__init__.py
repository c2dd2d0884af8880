"""上流の認証SDK"""

from authbridge.sdk.keycloak import (
    Keycloak,
    KeycloakConfig,
    KeycloakError,
    KeycloakInitOptions,
    KeycloakInstance,
    KeycloakLoginOptions,
    KeycloakLogoutOptions,
)
from authbridge.sdk.oidc import (
    LoginRequiredError,
    OidcError,
    OidcUser,
    UserManager,
    UserManagerEvents,
    UserManagerProtocol,
    UserManagerSettings,
)
from authbridge.sdk.tokens import TokenDecodeError, decode_token

__all__ = [
    "Keycloak",
    "KeycloakConfig",
    "KeycloakError",
    "KeycloakInitOptions",
    "KeycloakInstance",
    "KeycloakLoginOptions",
    "KeycloakLogoutOptions",
    "LoginRequiredError",
    "OidcError",
    "OidcUser",
    "TokenDecodeError",
    "UserManager",
    "UserManagerEvents",
    "UserManagerProtocol",
    "UserManagerSettings",
    "decode_token",
]
