"""Authorization flows that bring a source out of ``pending_auth``.

- AuthorizationCodeFlow: Google consent redirect with the source id as ``state``
- DeviceCodeFlow: caller-driven RFC 8628 polling
- register_static_credentials: connection-tested basic or bearer credentials
"""

from .authorization_code import AuthorizationCodeFlow
from .device_flow import DeviceCodeFlow, PollResult, PollStatus
from .session import AuthorizationSession, AuthState, FlowKind
from .static import register_static_credentials

__all__ = [
    "AuthorizationCodeFlow",
    "AuthorizationSession",
    "AuthState",
    "DeviceCodeFlow",
    "FlowKind",
    "PollResult",
    "PollStatus",
    "register_static_credentials",
]
