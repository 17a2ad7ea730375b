"""
ReadOnlyTelegramClient: allowlisted proxy around Telethon's TelegramClient.

The archive only ever reads from the account.  Every attribute lookup on the
proxy is checked against ``ALLOWED_METHODS``; anything else (send, edit,
delete, join, raw request objects) raises ``PermissionError`` and is logged
at CRITICAL.

Raw TL requests are needed for a few reads Telethon has no helper for
(a channel's "about" text, the address book).  Those go through
:meth:`ReadOnlyTelegramClient.invoke`, which accepts only the request types
in ``ALLOWED_REQUESTS``.  Calling the client object directly is not exposed.
"""

from __future__ import annotations

import logging
from typing import Any, FrozenSet, Tuple
from weakref import WeakKeyDictionary

from telethon import TelegramClient as TelethonClient
from telethon.tl.functions.channels import GetFullChannelRequest
from telethon.tl.functions.contacts import GetContactsRequest
from telethon.tl.functions.messages import GetFullChatRequest
from telethon.tl.functions.users import GetFullUserRequest

logger = logging.getLogger("syncer.readonly_client")

# Nothing that mutates server state belongs here.
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        # History
        "get_messages",
        "iter_messages",
        # Dialogs
        "get_dialogs",
        "iter_dialogs",
        # Entities
        "get_entity",
        "get_input_entity",
        "get_me",
        # Live updates (local handler registry only)
        "add_event_handler",
        "remove_event_handler",
        # Connection lifecycle
        "connect",
        "disconnect",
        "is_connected",
        "is_user_authorized",
    }
)

ALLOWED_REQUESTS: Tuple[type, ...] = (
    GetFullChannelRequest,
    GetFullChatRequest,
    GetFullUserRequest,
    GetContactsRequest,
)

# Wrapper members resolved on the proxy itself rather than the client.
_OWN_MEMBERS: FrozenSet[str] = frozenset(
    {
        "__class__",
        "__repr__",
        "__aenter__",
        "__aexit__",
        "__setattr__",
        "__delattr__",
        "__getattribute__",
        "_state",
        "invoke",
    }
)

# State lives outside the instance so object.__getattribute__ cannot reach it.
_CLIENT_MAP: "WeakKeyDictionary[ReadOnlyTelegramClient, TelethonClient]" = WeakKeyDictionary()


class ReadOnlyTelegramClient:
    """Read-only proxy around a Telethon client.

    Usage::

        async with ReadOnlyTelegramClient(raw_client) as client:
            async for dialog in client.iter_dialogs():
                ...
            full = await client.invoke(GetFullChannelRequest(channel))
    """

    __slots__ = ("__weakref__",)

    def __init__(self, client: TelethonClient) -> None:
        _CLIENT_MAP[self] = client

    @staticmethod
    def _state(self: "ReadOnlyTelegramClient") -> TelethonClient:
        client = _CLIENT_MAP.get(self)
        if client is None:
            raise PermissionError("ReadOnlyTelegramClient: internal state unavailable.")
        return client

    async def __aenter__(self) -> "ReadOnlyTelegramClient":
        client = ReadOnlyTelegramClient._state(self)
        await client.connect()
        logger.info("Telegram client connected")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        client = ReadOnlyTelegramClient._state(self)
        await client.disconnect()
        logger.info("Telegram client disconnected")

    async def invoke(self, request: Any) -> Any:
        """Send one allowlisted TL request.

        Raises:
            PermissionError: If the request type is not in ``ALLOWED_REQUESTS``.
        """
        if not isinstance(request, ALLOWED_REQUESTS):
            logger.critical("BLOCKED  | request=%s", type(request).__name__)
            raise PermissionError(
                f"ReadOnlyTelegramClient: request '{type(request).__name__}' is denied."
            )
        client = ReadOnlyTelegramClient._state(self)
        logger.debug("ALLOWED  | request=%s", type(request).__name__)
        return await client(request)

    def __getattribute__(self, name: str) -> Any:
        """Resolve ``name`` on the client if it is allowlisted.

        Non-callable members (``client.session`` and the like) are refused
        even when named, and any unexpected error while checking fails closed.
        """
        if name in _OWN_MEMBERS:
            return object.__getattribute__(self, name)

        if name.startswith("_"):
            logger.critical("BLOCKED  | attr=%s (internal)", name)
            raise PermissionError(
                f"ReadOnlyTelegramClient: internal attribute access to '{name}' is denied."
            )

        try:
            client = ReadOnlyTelegramClient._state(self)
            if name in ALLOWED_METHODS:
                attr = getattr(client, name)
                if not callable(attr):
                    raise PermissionError(
                        f"ReadOnlyTelegramClient: allowed member '{name}' is not callable."
                    )
                return attr

            logger.critical("BLOCKED  | method=%s", name)
            raise PermissionError(
                f"ReadOnlyTelegramClient: access to '{name}' is denied. "
                f"Only these methods are permitted: {sorted(ALLOWED_METHODS)}"
            )
        except PermissionError:
            raise
        except Exception:
            logger.critical(
                "BLOCKED  | method=%s (allowlist check failed)", name, exc_info=True
            )
            raise PermissionError(
                f"ReadOnlyTelegramClient: access to '{name}' denied (fail-closed)."
            )

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionError("ReadOnlyTelegramClient: setting attributes is not allowed.")

    def __delattr__(self, name: str) -> None:
        raise PermissionError("ReadOnlyTelegramClient: deleting attributes is not allowed.")

    def __repr__(self) -> str:
        client = ReadOnlyTelegramClient._state(self)
        return f"<ReadOnlyTelegramClient connected={client.is_connected()}>"
