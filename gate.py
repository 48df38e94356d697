"""
Bootstrap gate for the admin UI.

Access is granted in a fixed order: license first, then the admin account,
then the login session. States advance only on an explicit positive answer
from the server; a failed query leaves the flow in its loading state.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    checking_license = "checking_license"
    unlicensed = "unlicensed"
    checking_auth = "checking_auth"
    needs_admin_setup = "needs_admin_setup"
    needs_login = "needs_login"
    ready = "ready"


LOADING_STATES = frozenset({GateState.checking_license, GateState.checking_auth})


@dataclass(frozen=True)
class LicenseChecked:
    has_license: bool


@dataclass(frozen=True)
class AuthChecked:
    has_admin_account: bool
    is_authenticated: bool


@dataclass(frozen=True)
class QueryFailed:
    error: str


@dataclass(frozen=True)
class ActivationSucceeded:
    pass


@dataclass(frozen=True)
class SetupCompleted:
    pass


@dataclass(frozen=True)
class LoginSucceeded:
    pass


@dataclass(frozen=True)
class LoggedOut:
    pass


@dataclass(frozen=True)
class Navigated:
    pass


GateEvent = Union[
    LicenseChecked,
    AuthChecked,
    QueryFailed,
    ActivationSucceeded,
    SetupCompleted,
    LoginSucceeded,
    LoggedOut,
    Navigated,
]


class InvalidTransition(Exception):
    def __init__(self, state: GateState, event: GateEvent):
        super().__init__(f"{type(event).__name__} is not valid in state {state.value}")
        self.state = state
        self.event = event


def is_loading(state: GateState) -> bool:
    return state in LOADING_STATES


def transition(state: GateState, event: GateEvent) -> GateState:
    if state in LOADING_STATES and isinstance(event, QueryFailed):
        return state

    if state == GateState.checking_license and isinstance(event, LicenseChecked):
        return GateState.checking_auth if event.has_license else GateState.unlicensed

    if state == GateState.unlicensed and isinstance(event, ActivationSucceeded):
        return GateState.checking_license

    if state == GateState.checking_auth and isinstance(event, AuthChecked):
        if not event.has_admin_account:
            return GateState.needs_admin_setup
        if not event.is_authenticated:
            return GateState.needs_login
        return GateState.ready

    if state == GateState.needs_admin_setup and isinstance(event, SetupCompleted):
        return GateState.checking_auth

    if state == GateState.needs_login and isinstance(event, LoginSucceeded):
        return GateState.checking_auth

    if state == GateState.ready:
        if isinstance(event, Navigated):
            return GateState.ready
        if isinstance(event, LoggedOut):
            return GateState.needs_login

    raise InvalidTransition(state, event)


class GateFlow:
    """Drives the gate against the license server over HTTP."""

    def __init__(self, client: httpx.Client):
        self.client = client
        self.state = GateState.checking_license
        self.last_error: Optional[str] = None

    def _apply(self, event: GateEvent) -> GateState:
        self.state = transition(self.state, event)
        if isinstance(event, QueryFailed):
            self.last_error = event.error
            logger.warning("gate query failed in %s: %s", self.state.value, event.error)
        else:
            self.last_error = None
        return self.state

    def _get(self, path: str) -> httpx.Response:
        response = self.client.get(path)
        if response.status_code != 404:
            response.raise_for_status()
        return response

    def _check_license(self) -> GateEvent:
        try:
            response = self._get("/license")
            if response.status_code == 404:
                return LicenseChecked(has_license=False)
            has_license = response.json().get("status") == "active"
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            return QueryFailed(str(e))
        return LicenseChecked(has_license=has_license)

    def _check_auth(self) -> GateEvent:
        try:
            data = self._get("/auth/status").json()
            return AuthChecked(
                has_admin_account=data["has_admin_account"] is True,
                is_authenticated=data["is_authenticated"] is True,
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            return QueryFailed(str(e))

    def refresh(self) -> GateState:
        """Run queries until the flow settles or a query fails."""
        while is_loading(self.state):
            if self.state == GateState.checking_license:
                event = self._check_license()
            else:
                event = self._check_auth()
            self._apply(event)
            if isinstance(event, QueryFailed):
                break
        return self.state

    def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        return self.client.post(path, json=payload)

    def activate(self, license_key: str) -> Dict[str, Any]:
        machine_id = self._get("/machine-id").raise_for_status().json()["machine_id"]
        result = self._post(
            "/license/validate", {"license_key": license_key, "machine_id": machine_id}
        ).raise_for_status().json()
        if result.get("valid") is True:
            self._apply(ActivationSucceeded())
            self.refresh()
        return result

    def setup_admin(self, username: str, password: str) -> GateState:
        self._post(
            "/auth/setup", {"username": username, "password": password}
        ).raise_for_status()
        self._apply(SetupCompleted())
        return self.refresh()

    def login(self, username: str, password: str) -> bool:
        response = self._post("/auth/login", {"username": username, "password": password})
        if response.status_code in (401, 423):
            return False
        response.raise_for_status()
        self._apply(LoginSucceeded())
        self.refresh()
        return True

    def logout(self) -> GateState:
        self._post("/auth/logout", {}).raise_for_status()
        return self._apply(LoggedOut())

    def navigate(self) -> GateState:
        return self._apply(Navigated())
