# reservation_scheduler/services/priority_queue.py
"""
Waitlist ranking and promotion.

score = 100 + performance bonus + experience bonus

- performance bonus: 0..50, linear in the requester's hold -> conversion rate
  over the lookback window (no holds -> 0)
- experience bonus: 0..25, linear in tenure up to the saturation point,
  flat beyond it (no profile -> 0). Tenure is counted in calendar months of
  a 365-day year, so a requester joined exactly a year ago saturates at 12.

Scores are recomputed for every ranking pass; the value stored on an entry is
only the snapshot taken at join or promotion time.
"""

import logging
import uuid
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from reservation_scheduler.core.clock import Clock, SystemClock
from reservation_scheduler.core.config import settings
from reservation_scheduler.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from reservation_scheduler.crud.store import ReservationStore
from reservation_scheduler.schemas.events import IntervalPayload, WaitlistPromoted
from reservation_scheduler.schemas.reservation import (
    RequesterScore,
    WaitlistEntry,
    WaitlistStatistics,
    WaitlistStatus,
)
from reservation_scheduler.utils.intervals import DateLike, Interval, TimeLike
from reservation_scheduler.utils.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    dispatch_safely,
)

logger = logging.getLogger(__name__)

BASE_SCORE = 100.0
MAX_PERFORMANCE_BONUS = 50.0
MAX_EXPERIENCE_BONUS = 25.0
DAYS_PER_YEAR = 365
MONTHS_PER_YEAR = 12

_DEFAULT = object()

ANY_RESOURCE = "any"

OPEN_STATUSES = {WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED}


def rank_key(entry: WaitlistEntry):
    """Score descending, then FIFO, then id: a total order within a bucket."""
    return (-entry.score, entry.created_at, entry.id)


class PriorityQueueEngine:
    def __init__(
        self,
        store: ReservationStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        *,
        lookback_days=_DEFAULT,
        saturation_months: Optional[float] = None,
        grace_hours: Optional[float] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.clock = clock or SystemClock()
        # Omitted means "use the configured default"; None disables the window
        self.lookback_days = (
            settings.SCORE_LOOKBACK_DAYS if lookback_days is _DEFAULT else lookback_days
        )
        self.saturation_months = (
            saturation_months
            if saturation_months is not None
            else settings.EXPERIENCE_SATURATION_MONTHS
        )
        self.grace = timedelta(
            hours=grace_hours if grace_hours is not None else settings.WAITLIST_GRACE_HOURS
        )

    # --- Scoring ---

    def score_requester(self, requester_id: str) -> RequesterScore:
        now = self.clock.now()
        since = (
            now - timedelta(days=self.lookback_days)
            if self.lookback_days is not None
            else None
        )
        history = self.store.requester_history(requester_id, since=since)
        performance_bonus = MAX_PERFORMANCE_BONUS * history.conversion_rate

        experience_bonus = 0.0
        joined_at = self.store.get_requester_joined_at(requester_id)
        if joined_at is not None and self.saturation_months > 0:
            tenure_days = max((now - joined_at).total_seconds(), 0) / 86400
            months = tenure_days * MONTHS_PER_YEAR / DAYS_PER_YEAR
            experience_bonus = MAX_EXPERIENCE_BONUS * min(
                months / self.saturation_months, 1.0
            )

        return RequesterScore(
            requester_id=requester_id,
            base=BASE_SCORE,
            performance_bonus=performance_bonus,
            experience_bonus=experience_bonus,
        )

    # --- Ranking ---

    def rank(
        self,
        resource_id: Optional[str],
        on: DateLike,
        start: TimeLike,
        end: TimeLike,
    ) -> List[WaitlistEntry]:
        """
        Waiting entries for the bucket: exact resource matches plus wildcard
        entries for the same date and interval. Highest score first.
        """
        interval = Interval.of(on, start, end)
        entries = self.store.list_waitlist(
            resource_id, interval.date, interval.start, interval.end,
            WaitlistStatus.WAITING,
        )
        if resource_id is not None:
            entries += self.store.list_waitlist(
                None, interval.date, interval.start, interval.end,
                WaitlistStatus.WAITING,
            )

        return sorted(self._with_fresh_scores(entries), key=rank_key)

    def _with_fresh_scores(self, entries: List[WaitlistEntry]) -> List[WaitlistEntry]:
        """Rescore waiting entries; other entries keep their snapshot."""
        scores: Dict[str, float] = {}
        rescored = []
        for entry in entries:
            if entry.status != WaitlistStatus.WAITING:
                rescored.append(entry)
                continue
            if entry.requester_id not in scores:
                scores[entry.requester_id] = self.score_requester(
                    entry.requester_id
                ).total
            rescored.append(entry.model_copy(update={"score": scores[entry.requester_id]}))
        return rescored

    def promote_next(
        self,
        resource_id: Optional[str],
        on: DateLike,
        start: TimeLike,
        end: TimeLike,
        exclude_ids: Iterable[str] = (),
        reason: Optional[str] = None,
        errors: Optional[list] = None,
    ) -> Optional[WaitlistEntry]:
        """
        Move the top-ranked waiting entry to ``notified`` and announce it.

        Returns None when nobody is waiting. A candidate taken by a concurrent
        promotion is skipped in favour of the next one.
        """
        excluded = set(exclude_ids)
        interval = Interval.of(on, start, end)
        for candidate in self.rank(resource_id, interval.date, interval.start, interval.end):
            if candidate.id in excluded:
                continue
            try:
                return self._notify(
                    candidate,
                    resource_id,
                    reason or f"A slot opened up for {interval}",
                    errors,
                )
            except StaleStateError:
                logger.info(
                    f"Waitlist entry {candidate.id} was taken concurrently; "
                    f"trying next candidate"
                )

        logger.debug(f"No waiting entries for {resource_id} {interval}")
        return None

    def offer(
        self,
        entry_id: str,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
        errors: Optional[list] = None,
    ) -> WaitlistEntry:
        """
        Notify one waiting entry out of turn, e.g. when staff free up a slot
        by hand. A wildcard entry needs the resource being offered.
        """
        entry = self.get(entry_id)
        if entry.status != WaitlistStatus.WAITING:
            raise InvalidStateError(
                f"Waitlist entry {entry_id} is {entry.status.value}, not waiting",
                current_state=entry.status.value,
            )
        if entry.is_wildcard:
            if not resource_id:
                raise ValidationError(
                    f"Waitlist entry {entry_id} accepts any resource; "
                    f"resource_id is required to offer it one"
                )
        elif resource_id and resource_id != entry.resource_id:
            raise ValidationError(
                f"Waitlist entry {entry_id} is waiting for {entry.resource_id}, "
                f"not {resource_id}"
            )

        score = self.score_requester(entry.requester_id).total
        return self._notify(
            entry.model_copy(update={"score": score}),
            resource_id or entry.resource_id,
            reason or f"A slot was offered for {entry.interval}",
            errors,
        )

    def _notify(
        self,
        candidate: WaitlistEntry,
        resource_id: Optional[str],
        reason: str,
        errors: Optional[list],
    ) -> WaitlistEntry:
        """waiting -> notified, then announce. StaleStateError if taken meanwhile."""
        now = self.clock.now()
        promoted = self.store.update_waitlist_state(
            candidate.id,
            WaitlistStatus.WAITING,
            WaitlistStatus.NOTIFIED,
            {
                "notified": True,
                "notified_at": now,
                "offered_resource_id": resource_id,
                "score": candidate.score,
                "updated_at": now,
            },
        )
        logger.info(
            f"Promoted waitlist entry {promoted.id} ({promoted.requester_id}, "
            f"score {candidate.score:.2f}) for {resource_id} {candidate.interval}"
        )
        dispatch_safely(
            self.dispatcher,
            WaitlistPromoted(
                requester_id=promoted.requester_id,
                resource_id=resource_id,
                interval=IntervalPayload.from_interval(candidate.interval),
                reason=reason,
                occurred_at=now,
                entry_id=promoted.id,
                score=candidate.score,
                claim_by=now + self.grace,
            ),
            errors,
        )
        return promoted

    # --- Membership ---

    def join(
        self,
        requester_id: str,
        resource_id: Optional[str],
        on: DateLike,
        start: TimeLike,
        end: TimeLike,
        reason: Optional[str] = None,
    ) -> WaitlistEntry:
        if not requester_id:
            raise ValidationError("requester_id is required")
        interval = Interval.of(on, start, end)
        now = self.clock.now()

        entry = WaitlistEntry(
            id=f"wl_{uuid.uuid4().hex[:12]}",
            requester_id=requester_id,
            resource_id=resource_id,
            date=interval.date,
            start_time=interval.start,
            end_time=interval.end,
            score=self.score_requester(requester_id).total,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_waitlist_entry(entry)
        logger.info(
            f"Requester {requester_id} joined waitlist for "
            f"{resource_id or 'any resource'} {interval} as {entry.id}"
        )
        return self.store.get_waitlist_entry(entry.id)

    def get(self, entry_id: str) -> WaitlistEntry:
        entry = self.store.get_waitlist_entry(entry_id)
        if entry is None:
            raise NotFoundError("Waitlist entry", entry_id)
        return entry

    def withdraw(self, entry_id: str) -> WaitlistEntry:
        for attempt in range(2):
            entry = self.get(entry_id)
            if entry.status not in OPEN_STATUSES:
                raise InvalidStateError(
                    f"Waitlist entry {entry_id} is already {entry.status.value}",
                    current_state=entry.status.value,
                )
            try:
                withdrawn = self.store.update_waitlist_state(
                    entry_id,
                    entry.status,
                    WaitlistStatus.WITHDRAWN,
                    {"updated_at": self.clock.now()},
                )
            except StaleStateError:
                if attempt:
                    raise
                continue
            logger.info(f"Waitlist entry {entry_id} withdrawn")
            return withdrawn

    def lapse(self, entry_id: str, policy: str) -> WaitlistEntry:
        """
        Take back an unclaimed promotion.

        ``requeue`` returns the entry to ``waiting`` (keeping its original
        place in the FIFO order); ``withdraw`` drops it.
        """
        entry = self.get(entry_id)
        now = self.clock.now()
        if policy == "withdraw":
            to_state = WaitlistStatus.WITHDRAWN
            extra = {"updated_at": now}
        elif policy == "requeue":
            to_state = WaitlistStatus.WAITING
            extra = {
                "notified": False,
                "notified_at": None,
                "offered_resource_id": None,
                "lapse_count": entry.lapse_count + 1,
                "updated_at": now,
            }
        else:
            raise ValidationError(f"Unknown grace policy: {policy!r}")

        lapsed = self.store.update_waitlist_state(
            entry_id, WaitlistStatus.NOTIFIED, to_state, extra
        )
        logger.info(
            f"Waitlist entry {entry_id} did not claim within the grace window; "
            f"now {lapsed.status.value}"
        )
        return lapsed

    def queue_position(self, entry_id: str) -> Optional[int]:
        """1-based position of a waiting entry within its own bucket."""
        entry = self.get(entry_id)
        if entry.status != WaitlistStatus.WAITING:
            return None
        ranked = self.rank(
            entry.resource_id, entry.date, entry.start_time, entry.end_time
        )
        for position, candidate in enumerate(ranked, start=1):
            if candidate.id == entry_id:
                return position
        return None

    # --- Reporting ---

    def list_entries(
        self, order_by: str = "created_at", **filters
    ) -> List[WaitlistEntry]:
        """
        Entries matching the store filters. Waiting entries carry a fresh score.
        ``order_by`` is ``created_at`` (oldest first) or ``priority``.
        """
        if order_by not in ("created_at", "priority"):
            raise ValidationError(f"Unknown ordering: {order_by!r}")
        entries = self._with_fresh_scores(self.store.list_waitlist_entries(**filters))
        if order_by == "priority":
            entries.sort(key=rank_key)
        return entries

    def statistics(self, **filters) -> WaitlistStatistics:
        entries = self.store.list_waitlist_entries(**filters)
        now = self.clock.now()

        by_status = {status.value: 0 for status in WaitlistStatus}
        by_resource: Dict[str, int] = {}
        waits = []
        for entry in entries:
            by_status[entry.status.value] += 1
            if entry.status == WaitlistStatus.WAITING:
                key = entry.resource_id or ANY_RESOURCE
                by_resource[key] = by_resource.get(key, 0) + 1
                waits.append((now - entry.created_at).total_seconds() / 3600)

        waiting = self._with_fresh_scores(
            [e for e in entries if e.status == WaitlistStatus.WAITING]
        )
        return WaitlistStatistics(
            total=len(entries),
            by_status=by_status,
            waiting_by_resource=by_resource,
            mean_wait_hours=round(sum(waits) / len(waits), 1) if waits else 0.0,
            top_score=max((e.score for e in waiting), default=None),
        )
