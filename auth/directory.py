"""
auth/directory.py -- Directory Client: LDAP bind + search via ldap3.

bind(username, password) returns exactly one of three typed results:

  DirectoryMatch        the user entry was found and the user's own bind
                        with the supplied password succeeded.
  DirectoryNoMatch      the directory answered, but the entry does not exist,
                        is ambiguous, lacks required attributes, or rejected
                        the password. An ordinary credential failure.
  DirectoryUnavailable  the directory could not be used at all: connection
                        refused, timeout, TLS failure, protocol error, or the
                        service account bind was rejected. The orchestrator
                        treats this as "fall back to local", never as a
                        login failure in itself.

The split is made on exception classes from ldap3.core.exceptions and on the
boolean result of Connection.bind(); no error strings are inspected.

Flow (the same as passport-ldapauth, which the previous deployment used):
  1. bind as the service identity (LDAP_BIND_DN / LDAP_BIND_PASSWORD)
  2. search LDAP_SEARCH_BASE with LDAP_SEARCH_FILTER, {{username}} replaced by
     the RFC 4515-escaped username
  3. bind as the found entry's DN with the user's password

An empty password is refused before any network traffic: many directories
treat a simple bind with an empty password as an anonymous bind and report
success.

Every operation carries LDAP_TIMEOUT_SECONDS as both connect and receive
timeout, so an unreachable directory surfaces as DirectoryUnavailable instead
of hanging the login request.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from ldap3 import NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import (
    LDAPCommunicationError,
    LDAPException,
    LDAPResponseTimeoutError,
    LDAPServerPoolExhaustedError,
    LDAPStartTLSError,
)
from ldap3.utils.conv import escape_filter_chars

from auth.models import DirectoryUser

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("projectpulse.auth.directory")

# Errors that mean "could not talk to the directory at all".
_UNREACHABLE_ERRORS: tuple[type[BaseException], ...] = (
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
    LDAPServerPoolExhaustedError,
    LDAPStartTLSError,
    OSError,
)

_USERNAME_ATTRIBUTES = ("uid", "sAMAccountName")
_EMAIL_ATTRIBUTES = ("mail", "email")
_NAME_ATTRIBUTES = ("cn", "displayName")
_DEFAULT_DISPLAY_NAME = "LDAP User"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DirectoryConfig:
    url: str
    bind_dn: str
    bind_password: str
    search_base: str
    search_filter: str = "(uid={{username}})"
    search_attributes: tuple[str, ...] = ("uid", "cn", "mail")
    timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> DirectoryConfig:
        return cls(
            url=settings.ldap_url,
            bind_dn=settings.ldap_bind_dn,
            bind_password=settings.ldap_bind_password,
            search_base=settings.ldap_search_base,
            search_filter=settings.ldap_search_filter,
            search_attributes=tuple(settings.ldap_search_attributes),
            timeout_seconds=settings.ldap_timeout_seconds,
        )

    def filter_for(self, username: str) -> str:
        return self.search_filter.replace("{{username}}", escape_filter_chars(username))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DirectoryMatch:
    user: DirectoryUser


@dataclass(frozen=True)
class DirectoryNoMatch:
    reason: str


@dataclass(frozen=True)
class DirectoryUnavailable:
    cause: str
    error_type: str | None = None


DirectoryResult = Union[DirectoryMatch, DirectoryNoMatch, DirectoryUnavailable]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


ConnectionFactory = Callable[[str, str], Connection]


def _first_value(attributes: dict, names: tuple[str, ...]) -> str | None:
    for name in names:
        value = attributes.get(name)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if value:
            return str(value)
    return None


def _unbind_quietly(conn: Connection) -> None:
    try:
        conn.unbind()
    except (LDAPException, OSError):
        logger.debug("Ignoring error while closing directory connection", exc_info=True)


class DirectoryClient:
    """Authenticate users against an LDAP directory.

    connection_factory(user_dn, password) -> ldap3.Connection is injectable so
    tests can script the directory; the default opens a real connection with
    the configured timeouts.
    """

    def __init__(self, config: DirectoryConfig, connection_factory: ConnectionFactory | None = None) -> None:
        self.config = config
        self._connect = connection_factory or self._open_connection

    def _open_connection(self, user: str, password: str) -> Connection:
        server = Server(self.config.url, connect_timeout=self.config.timeout_seconds, get_info=NONE)
        return Connection(
            server,
            user=user,
            password=password,
            receive_timeout=self.config.timeout_seconds,
            read_only=True,
            raise_exceptions=False,
            auto_referrals=False,
        )

    def bind(self, username: str, password: str) -> DirectoryResult:
        """Authenticate username/password against the directory."""
        if not username or not password:
            return DirectoryNoMatch("empty username or password")
        try:
            return self._authenticate(username, password)
        except _UNREACHABLE_ERRORS as exc:
            logger.warning("Directory unreachable (%s)", type(exc).__name__)
            return DirectoryUnavailable("directory unreachable", type(exc).__name__)
        except LDAPException as exc:
            logger.warning("Directory protocol error (%s)", type(exc).__name__)
            return DirectoryUnavailable("directory protocol error", type(exc).__name__)

    def _authenticate(self, username: str, password: str) -> DirectoryResult:
        service = self._connect(self.config.bind_dn, self.config.bind_password)
        try:
            if not service.bind():
                logger.error("Directory service bind rejected for %s", self.config.bind_dn)
                return DirectoryUnavailable("service bind rejected")
            service.search(
                self.config.search_base,
                self.config.filter_for(username),
                search_scope=SUBTREE,
                attributes=list(self.config.search_attributes),
                size_limit=2,
            )
            entries = [e for e in (service.response or []) if e.get("type") == "searchResEntry"]
        finally:
            _unbind_quietly(service)

        if not entries:
            return DirectoryNoMatch("no such entry")
        if len(entries) > 1:
            logger.warning("Directory search for %r matched more than one entry", username)
            return DirectoryNoMatch("ambiguous entry")

        entry = entries[0]
        user_conn = self._connect(entry["dn"], password)
        try:
            if not user_conn.bind():
                return DirectoryNoMatch("bind rejected")
        finally:
            _unbind_quietly(user_conn)

        attributes = entry.get("attributes") or {}
        found_username = _first_value(attributes, _USERNAME_ATTRIBUTES)
        email = _first_value(attributes, _EMAIL_ATTRIBUTES)
        if not found_username or not email:
            logger.warning("Directory entry %s is missing username or email", entry["dn"])
            return DirectoryNoMatch("missing required attributes")
        display_name = _first_value(attributes, _NAME_ATTRIBUTES) or _DEFAULT_DISPLAY_NAME
        return DirectoryMatch(
            DirectoryUser(username=found_username, email=email, display_name=display_name, dn=entry["dn"])
        )
