"""Protocol engine for the talkwire messaging client."""

__version__ = "0.1.0"

from .client import (
    BaseClient,
    login_with_auth_token,
    login_with_password,
    login_with_qr,
)
from .config import ClientConfig, LoginConfig, PollingConfig, load_config
from .e2ee import E2EE, ConversationKey, E2EEKeyPair, EncryptedPayload
from .errors import (
    ConfigLoadError,
    DecodeError,
    E2EEError,
    E2EEErrorKind,
    EncodeError,
    LoginError,
    LoginErrorKind,
    NotAuthenticatedError,
    RpcError,
    RpcErrorKind,
    TalkwireError,
    TransportError,
    TransportResponseError,
    TransportTimeout,
)
from .events import ClientEventType, EventEmitter, LogRecord
from .login import LoginSession, LoginState, LoginStateMachine
from .polling import (
    LongPollEngine,
    Operation,
    OperationType,
    PollBatch,
    PollEvent,
    PollEventType,
    PollSource,
    TalkOperationSource,
)
from .rpc import (
    ApplicationException,
    Channel,
    ErrorCode,
    RpcDispatcher,
    Transport,
    TransportRequest,
)
from .session import Profile, SessionState
from .storage import BaseStorage, FileStorage, MemoryStorage

__all__ = [
    "E2EE",
    "ApplicationException",
    "BaseClient",
    "BaseStorage",
    "Channel",
    "ClientConfig",
    "ClientEventType",
    "ConfigLoadError",
    "ConversationKey",
    "DecodeError",
    "E2EEError",
    "E2EEErrorKind",
    "E2EEKeyPair",
    "EncodeError",
    "EncryptedPayload",
    "ErrorCode",
    "EventEmitter",
    "FileStorage",
    "LogRecord",
    "LoginConfig",
    "LoginError",
    "LoginErrorKind",
    "LoginSession",
    "LoginState",
    "LoginStateMachine",
    "LongPollEngine",
    "MemoryStorage",
    "NotAuthenticatedError",
    "Operation",
    "OperationType",
    "PollBatch",
    "PollEvent",
    "PollEventType",
    "PollSource",
    "PollingConfig",
    "Profile",
    "RpcDispatcher",
    "RpcError",
    "RpcErrorKind",
    "SessionState",
    "TalkOperationSource",
    "TalkwireError",
    "Transport",
    "TransportError",
    "TransportRequest",
    "TransportResponseError",
    "TransportTimeout",
    "load_config",
    "login_with_auth_token",
    "login_with_password",
    "login_with_qr",
]
