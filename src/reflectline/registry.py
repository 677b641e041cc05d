import logging

logger = logging.getLogger(__name__)


class OwnerBusy(Exception):
    """The owner already has a live call."""


class CallRegistry:
    """Live call actors, by call handle and by owner.

    Webhooks and the media stream find their actor here.  Registering a
    second live call for the same owner is refused; calls without an owner
    are only tracked by handle.
    """

    def __init__(self):
        self._by_sid: dict = {}
        self._by_owner: dict = {}

    def register(self, actor) -> None:
        sid = actor.session.call_sid
        owner = actor.session.owner
        existing = self._by_owner.get(owner) if owner else None
        if existing is not None and existing is not actor:
            raise OwnerBusy(f"Owner {owner} already has live call {existing.session.call_sid}")
        self._by_sid[sid] = actor
        if owner:
            self._by_owner[owner] = actor
        logger.debug(f"[{sid}] Registered actor for owner {owner or '-'}")

    def unregister(self, actor) -> None:
        sid = actor.session.call_sid
        if self._by_sid.get(sid) is actor:
            del self._by_sid[sid]
        if self._by_owner.get(actor.session.owner) is actor:
            del self._by_owner[actor.session.owner]

    def get(self, call_sid: str):
        return self._by_sid.get(call_sid)

    def for_owner(self, owner: str):
        return self._by_owner.get(owner)

    def owner_busy(self, owner: str) -> bool:
        return bool(owner) and owner in self._by_owner

    def __len__(self) -> int:
        return len(self._by_sid)
