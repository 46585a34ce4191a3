"""deskauth - OAuth2 Authorization Code + PKCE for desktop applications.

Connects a desktop application to account-gated services (calendar,
email, music) through the system browser and a loopback redirect
listener, then keeps the resulting tokens fresh in the background.
"""

from .callback_server import OAuthCallbackServer, wait_for_code
from .config import DeskAuthSettings, clear_settings, get_settings
from .events import LifecycleEvents, Subscription
from .exceptions import (
    AuthenticationError,
    AuthTimeout,
    CallbackServerError,
    ConfigurationError,
    DeskAuthException,
    FlowAlreadyInProgress,
    NoTokensFound,
    ProviderDenied,
    RefreshFailed,
    StateMismatch,
    TokenError,
    TokenExchangeFailed,
    UserCancelled,
    UserInfoError,
)
from .log import enable_debug, get_logger, set_level
from .manager import AuthenticationManager
from .pkce import FlowState, PKCEChallenge
from .providers import (
    GMAIL,
    GOOGLE,
    MICROSOFT,
    OUTLOOK,
    SPOTIFY,
    ProviderProfile,
    available_providers,
    get_profile,
    register_profile,
)
from .registry import AccountRegistry
from .scheduler import RefreshHandle, RefreshScheduler
from .token_client import TokenExchangeClient
from .token_store import KeyringTokenStore, MemoryTokenStore, TokenStore, create_token_store
from .types import (
    Account,
    AuthEvent,
    AuthFlowState,
    AuthState,
    LifecycleEvent,
    OAuthConfig,
    TokenSet,
    UserInfo,
)


__version__ = "0.1.0"

__all__ = [
    "GMAIL",
    "GOOGLE",
    "MICROSOFT",
    "OUTLOOK",
    "SPOTIFY",
    "Account",
    "AccountRegistry",
    "AuthEvent",
    "AuthFlowState",
    "AuthState",
    "AuthTimeout",
    "AuthenticationError",
    "AuthenticationManager",
    "CallbackServerError",
    "ConfigurationError",
    "DeskAuthException",
    "DeskAuthSettings",
    "FlowAlreadyInProgress",
    "FlowState",
    "KeyringTokenStore",
    "LifecycleEvent",
    "LifecycleEvents",
    "MemoryTokenStore",
    "NoTokensFound",
    "OAuthCallbackServer",
    "OAuthConfig",
    "PKCEChallenge",
    "ProviderDenied",
    "ProviderProfile",
    "RefreshFailed",
    "RefreshHandle",
    "RefreshScheduler",
    "StateMismatch",
    "Subscription",
    "TokenError",
    "TokenExchangeClient",
    "TokenExchangeFailed",
    "TokenSet",
    "TokenStore",
    "UserCancelled",
    "UserInfo",
    "UserInfoError",
    "__version__",
    "available_providers",
    "clear_settings",
    "create_token_store",
    "enable_debug",
    "get_logger",
    "get_profile",
    "get_settings",
    "register_profile",
    "set_level",
    "wait_for_code",
]
