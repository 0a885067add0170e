"""Login state machine.

Each login attempt runs in a fresh ``LoginSession`` that moves through::

    IDLE -> AUTHENTICATING -> {AWAITING_PINCODE, AWAITING_QR_SCAN}
         -> VERIFYING -> AUTHENTICATED | FAILED

The token flow skips negotiation (IDLE -> VERIFYING). Failures are terminal;
the machine never retries on its own. Only credentials the server has
confirmed are written to ``SessionState``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum, IntEnum
from typing import Any, TypeVar

from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .config import LoginConfig
from .errors import LoginError, LoginErrorKind, RpcError, RpcErrorKind
from .events import ClientEventType, EventEmitter
from .rpc import ErrorCode, RpcDispatcher
from .session import Profile, SessionState
from .thrift import Struct

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

IDENTITY_PROVIDER_LINE = 1
VERIFY_PATH = "/Q"

_CREDENTIAL_ERRORS = frozenset(
    {
        ErrorCode.AUTHENTICATION_FAILED,
        ErrorCode.INVALID_IDENTITY_CREDENTIAL,
        ErrorCode.ILLEGAL_IDENTITY_CREDENTIAL,
        ErrorCode.NO_SUCH_IDENTITY_IDENTIFIER,
        ErrorCode.NOT_AVAILABLE_IDENTITY_IDENTIFIER,
        ErrorCode.NOT_AUTHENTICATED,
    }
)
_DEVICE_ERRORS = frozenset(
    {ErrorCode.INCOMPATIBLE_APP_VERSION, ErrorCode.NOT_AUTHORIZED_DEVICE}
)


class LoginState(Enum):
    """States of one login attempt."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    AWAITING_PINCODE = "awaiting_pincode"
    AWAITING_QR_SCAN = "awaiting_qr_scan"
    VERIFYING = "verifying"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_TRANSITIONS: dict[LoginState, frozenset[LoginState]] = {
    LoginState.IDLE: frozenset(
        {LoginState.AUTHENTICATING, LoginState.VERIFYING, LoginState.FAILED}
    ),
    LoginState.AUTHENTICATING: frozenset(
        {
            LoginState.AWAITING_PINCODE,
            LoginState.AWAITING_QR_SCAN,
            LoginState.VERIFYING,
            LoginState.FAILED,
        }
    ),
    LoginState.AWAITING_QR_SCAN: frozenset(
        {LoginState.AWAITING_PINCODE, LoginState.VERIFYING, LoginState.FAILED}
    ),
    LoginState.AWAITING_PINCODE: frozenset({LoginState.VERIFYING, LoginState.FAILED}),
    LoginState.VERIFYING: frozenset({LoginState.AUTHENTICATED, LoginState.FAILED}),
    LoginState.AUTHENTICATED: frozenset(),
    LoginState.FAILED: frozenset(),
}


class LoginType(IntEnum):
    """``LoginRequest.type`` values."""

    ID_CREDENTIAL = 0
    QRCODE = 1
    ID_CREDENTIAL_WITH_E2EE = 2


class LoginResultType(IntEnum):
    """``LoginResult.type`` values."""

    SUCCESS = 1
    REQUIRE_QRCODE = 2
    REQUIRE_DEVICE_CONFIRM = 3


class LoginSession:
    """Transient state of a single login attempt. Never persisted."""

    def __init__(self, flow: str) -> None:
        self.flow = flow
        self.state = LoginState.IDLE
        self.history: list[LoginState] = [LoginState.IDLE]
        self.pincode: str | None = None
        self.qr_url: str | None = None
        self.error: Exception | None = None

    def transition(self, state: LoginState) -> None:
        """Move to ``state``.

        Raises:
            RuntimeError: If the transition is not allowed.
        """
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid login transition {self.state.value} -> {state.value}"
            )
        _LOGGER.debug(
            "[%s] Login state: %s → %s", self.flow, self.state.value, state.value
        )
        self.state = state
        self.history.append(state)

    @property
    def is_finished(self) -> bool:
        return self.state in (LoginState.AUTHENTICATED, LoginState.FAILED)


def encrypt_credentials(
    session_key: str, email: str, password: str, nvalue: str, evalue: str
) -> str:
    """RSA-encrypt the length-prefixed credential blob, hex encoded."""
    message = "".join(chr(len(part)) + part for part in (session_key, email, password))
    public_key = rsa.RSAPublicNumbers(int(evalue, 16), int(nvalue, 16)).public_key()
    return public_key.encrypt(message.encode("utf-8"), padding.PKCS1v15()).hex()


def _login_error_for(err: RpcError, fallback: LoginErrorKind) -> LoginError | None:
    if err.kind is not RpcErrorKind.APPLICATION or err.exception is None:
        return None
    if err.exception.kind in _CREDENTIAL_ERRORS:
        return LoginError(LoginErrorKind.INVALID_CREDENTIALS, str(err))
    if err.exception.kind in _DEVICE_ERRORS:
        return LoginError(LoginErrorKind.UNSUPPORTED_DEVICE, str(err))
    return LoginError(fallback, str(err))


class LoginStateMachine:
    """Runs password, QR and token login flows against the dispatcher."""

    def __init__(
        self,
        dispatcher: RpcDispatcher,
        session: SessionState,
        events: EventEmitter,
        config: LoginConfig | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._session = session
        self._events = events
        self._config = config or LoginConfig()
        self.last_attempt: LoginSession | None = None

    # -------------------------------------------------------------------------
    # Public API: flows
    # -------------------------------------------------------------------------

    async def with_password(
        self,
        email: str,
        password: str,
        *,
        pincode: str | None = None,
    ) -> LoginSession:
        """Log in with email and password.

        Emits ``pincall`` once when the server asks for device confirmation.

        Raises:
            LoginError: INVALID_CREDENTIALS, PINCODE_DENIED or
                UNSUPPORTED_DEVICE.
            RpcError: Transport failures along the way.
        """
        login = LoginSession("password")
        await self._run(login, self._password_flow(login, email, password, pincode))
        return login

    async def with_qr_code(self) -> LoginSession:
        """Log in by having the primary device scan a QR code.

        Emits ``qrcall`` with the login URL and, when the stored certificate
        is rejected, ``pincall`` with the confirmation pincode.

        Raises:
            LoginError: QR_EXPIRED or PINCODE_DENIED.
            RpcError: Transport failures along the way.
        """
        login = LoginSession("qr")
        await self._run(login, self._qr_flow(login))
        return login

    async def with_auth_token(self, auth_token: str) -> LoginSession:
        """Adopt an existing auth token after one profile round trip.

        Raises:
            LoginError: INVALID_CREDENTIALS when the server rejects the token.
        """
        login = LoginSession("token")
        await self._run(login, self._token_flow(login, auth_token))
        return login

    async def logout(self) -> None:
        """Invalidate the session token server-side and forget it locally."""
        profile = self._session.profile
        if self._session.auth_token:
            await self._dispatcher.call("auth", "logoutZ", Struct())
        await self._session.forget_auth_token()
        self._session.profile = None
        await self._events.emit(ClientEventType.END, profile)

    # -------------------------------------------------------------------------
    # Internal: flow runner
    # -------------------------------------------------------------------------

    async def _run(self, login: LoginSession, flow: Awaitable[None]) -> None:
        self.last_attempt = login
        try:
            await flow
        except (LoginError, RpcError) as err:
            login.error = err
            if not login.is_finished:
                login.transition(LoginState.FAILED)
            _LOGGER.warning("[%s] Login failed: %s", login.flow, err)
            await self._events.log("login", {"flow": login.flow, "error": str(err)})
            raise
        except asyncio.CancelledError:
            if not login.is_finished:
                login.transition(LoginState.FAILED)
            _LOGGER.debug("[%s] Login cancelled", login.flow)
            raise

    async def _poll_until(
        self,
        login: LoginSession,
        check: Callable[[], Awaitable[T | None]],
        expired: LoginErrorKind,
    ) -> T:
        """Repeat a long-poll check until it yields a value or the deadline passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.verify_deadline
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LoginError(expired, f"{login.flow} verification timed out")
            try:
                result = await asyncio.wait_for(check(), timeout=remaining)
            except TimeoutError:
                continue
            except RpcError as err:
                if err.kind is RpcErrorKind.TIMEOUT:
                    continue
                raise
            if result is not None:
                return result
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(self._config.verify_retry_interval, remaining))

    async def _fetch_profile(self) -> Profile:
        try:
            value = await self._dispatcher.call("talk", "getProfile", Struct({1: 0}))
        except RpcError as err:
            mapped = _login_error_for(err, LoginErrorKind.INVALID_CREDENTIALS)
            if mapped is None:
                raise
            raise mapped from err
        try:
            return Profile.from_struct(value if isinstance(value, Struct) else Struct())
        except ValueError as err:
            raise LoginError(
                LoginErrorKind.INVALID_CREDENTIALS, "getProfile returned no profile"
            ) from err

    async def _complete(self, login: LoginSession, profile: Profile) -> None:
        """Populate the session with the profile and announce it."""
        self._session.profile = profile
        login.transition(LoginState.AUTHENTICATED)
        _LOGGER.info("[%s] Authenticated as %s", login.flow, profile.mid)
        await self._events.emit(ClientEventType.UPDATE_PROFILE, profile)
        await self._events.emit(ClientEventType.READY, profile)

    async def _adopt_token(self, token: str) -> None:
        await self._session.save_auth_token(token)
        await self._events.emit(ClientEventType.UPDATE_AUTHTOKEN, token)

    # -------------------------------------------------------------------------
    # Internal: password flow
    # -------------------------------------------------------------------------

    async def _password_flow(
        self, login: LoginSession, email: str, password: str, pincode: str | None
    ) -> None:
        login.transition(LoginState.AUTHENTICATING)
        rsa_key = await self._dispatcher.call(
            "login", "getRSAKeyInfo", Struct({2: IDENTITY_PROVIDER_LINE})
        )
        if not isinstance(rsa_key, Struct):
            raise LoginError(LoginErrorKind.INVALID_CREDENTIALS, "No RSA key info")
        encrypted = encrypt_credentials(
            rsa_key.get(4, ""), email, password, rsa_key.get(2, ""), rsa_key.get(3, "")
        )
        certificate = await self._session.load_certificate(email)
        request = Struct(
            {
                1: int(LoginType.ID_CREDENTIAL),
                2: IDENTITY_PROVIDER_LINE,
                3: rsa_key.get(1, ""),
                4: encrypted,
                5: True,
                7: self._session.device.type,
                8: certificate,
            }
        )
        result = await self._login_z(request, LoginErrorKind.INVALID_CREDENTIALS)
        result_type = result.get(5)

        if result_type == LoginResultType.REQUIRE_DEVICE_CONFIRM:
            pin = result.get(4) or pincode or self._config.default_pincode
            login.pincode = pin
            login.transition(LoginState.AWAITING_PINCODE)
            await self._events.emit(ClientEventType.PINCALL, pin)
            pending_verifier = str(result.get(3, ""))
            verifier = await self._poll_until(
                login,
                lambda: self._check_password_verifier(pending_verifier),
                LoginErrorKind.PINCODE_DENIED,
            )
            login.transition(LoginState.VERIFYING)
            result = await self._login_z(
                Struct({1: int(LoginType.QRCODE), 9: verifier}),
                LoginErrorKind.PINCODE_DENIED,
            )
        elif result_type == LoginResultType.SUCCESS:
            login.transition(LoginState.VERIFYING)
        else:
            raise LoginError(
                LoginErrorKind.UNSUPPORTED_DEVICE,
                f"Password login not available for {self._session.device.type}",
            )

        token = result.get(1)
        if not isinstance(token, str) or not token:
            raise LoginError(
                LoginErrorKind.INVALID_CREDENTIALS, "Login result has no token"
            )
        await self._adopt_token(token)
        cert = result.get(2)
        if isinstance(cert, str) and cert:
            await self._session.save_certificate(email, cert)
            await self._events.emit(ClientEventType.UPDATE_CERT, cert)
        await self._complete(login, await self._fetch_profile())

    async def _login_z(self, request: Struct, failure: LoginErrorKind) -> Struct:
        try:
            result = await self._dispatcher.call("login", "loginZ", Struct({2: request}))
        except RpcError as err:
            mapped = _login_error_for(err, failure)
            if mapped is None:
                raise
            raise mapped from err
        if not isinstance(result, Struct):
            raise LoginError(failure, "loginZ returned no result")
        return result

    async def _check_password_verifier(self, verifier: str) -> str | None:
        raw = await self._dispatcher.fetch_raw(
            VERIFY_PATH, access_token=verifier, long_poll=True
        )
        try:
            document: Any = json.loads(raw)
        except ValueError:
            _LOGGER.debug("[password] Verification response is not JSON")
            return None
        if not isinstance(document, dict):
            return None
        error = document.get("errorCode") or document.get("error")
        if error:
            reason = document.get("errorMessage") or error
            raise LoginError(
                LoginErrorKind.PINCODE_DENIED, f"Device confirmation denied: {reason}"
            )
        result = document.get("result")
        if isinstance(result, dict) and isinstance(result.get("verifier"), str):
            return str(result["verifier"])
        return None

    # -------------------------------------------------------------------------
    # Internal: QR flow
    # -------------------------------------------------------------------------

    async def _qr_flow(self, login: LoginSession) -> None:
        login.transition(LoginState.AUTHENTICATING)
        created = await self._dispatcher.call(
            "secondary_login", "createSession", Struct({1: Struct()})
        )
        session_id = created.get(1) if isinstance(created, Struct) else None
        if not isinstance(session_id, str):
            raise LoginError(LoginErrorKind.QR_EXPIRED, "No QR login session")
        by_session = Struct({1: Struct({1: session_id})})

        qr = await self._dispatcher.call("secondary_login", "createQrCode", by_session)
        url = qr.get(1) if isinstance(qr, Struct) else None
        if not isinstance(url, str):
            raise LoginError(LoginErrorKind.QR_EXPIRED, "No QR login URL")
        login.qr_url = url
        login.transition(LoginState.AWAITING_QR_SCAN)
        await self._events.emit(ClientEventType.QRCALL, url)

        await self._poll_until(
            login,
            lambda: self._check_session(
                session_id, "checkQrCodeVerified", LoginErrorKind.QR_EXPIRED
            ),
            LoginErrorKind.QR_EXPIRED,
        )

        if not await self._verify_certificate(session_id):
            pin_result = await self._dispatcher.call(
                "secondary_login", "createPinCode", by_session
            )
            pin = pin_result.get(1) if isinstance(pin_result, Struct) else None
            if not isinstance(pin, str):
                raise LoginError(LoginErrorKind.PINCODE_DENIED, "No pincode issued")
            login.pincode = pin
            login.transition(LoginState.AWAITING_PINCODE)
            await self._events.emit(ClientEventType.PINCALL, pin)
            await self._poll_until(
                login,
                lambda: self._check_session(
                    session_id, "checkPinCodeVerified", LoginErrorKind.PINCODE_DENIED
                ),
                LoginErrorKind.PINCODE_DENIED,
            )

        login.transition(LoginState.VERIFYING)
        result = await self._dispatcher.call(
            "secondary_login",
            "qrCodeLogin",
            Struct({1: Struct({1: session_id, 2: self._session.device.type, 3: True})}),
        )
        if not isinstance(result, Struct) or not isinstance(result.get(2), str):
            raise LoginError(LoginErrorKind.QR_EXPIRED, "QR login returned no token")
        cert = result.get(1)
        if isinstance(cert, str) and cert:
            await self._session.save_qr_certificate(cert)
            await self._events.emit(ClientEventType.UPDATE_QRCERT, cert)
        await self._adopt_token(result[2])
        await self._complete(login, await self._fetch_profile())

    async def _check_session(
        self, session_id: str, method: str, failure: LoginErrorKind
    ) -> bool | None:
        try:
            await self._dispatcher.call(
                "secondary_login_poll",
                method,
                Struct({1: Struct({1: session_id})}),
                long_poll=True,
                access_token=session_id,
            )
        except RpcError as err:
            if err.kind is RpcErrorKind.APPLICATION:
                raise LoginError(failure, str(err)) from err
            raise
        return True

    async def _verify_certificate(self, session_id: str) -> bool:
        certificate = await self._session.load_qr_certificate()
        if certificate is None:
            return False
        try:
            await self._dispatcher.call(
                "secondary_login",
                "verifyCertificate",
                Struct({1: Struct({1: session_id, 2: certificate})}),
            )
        except RpcError as err:
            if err.kind is not RpcErrorKind.APPLICATION:
                raise
            _LOGGER.debug("[qr] Stored certificate rejected: %s", err)
            return False
        return True

    # -------------------------------------------------------------------------
    # Internal: token flow
    # -------------------------------------------------------------------------

    async def _token_flow(self, login: LoginSession, auth_token: str) -> None:
        if not auth_token:
            raise LoginError(LoginErrorKind.INVALID_CREDENTIALS, "Empty auth token")
        login.transition(LoginState.VERIFYING)
        previous = self._session.auth_token
        self._session.auth_token = auth_token
        try:
            profile = await self._fetch_profile()
        except BaseException:
            self._session.auth_token = previous
            raise
        await self._adopt_token(auth_token)
        await self._complete(login, profile)
