# reservation_scheduler/background_tasks/reservation_tasks.py
"""
Expiration and promotion sweep.

Registered in reservation_scheduler/scheduler.py. Each tick:
1. expires every active hold whose deadline has passed (promoting the next
   waiting entry for the freed slot)
2. sends the expiring-soon notice once per hold inside the notice horizon
3. takes back promotions nobody claimed within the grace window and offers
   the slot to the next entry

Ticks may overlap; every step is a compare-and-swap, so a second tick over
the same state changes nothing. A failure on one item never stops the rest.

Run a single sweep from the command line:

    python -m reservation_scheduler.background_tasks.reservation_tasks --once
"""

import argparse
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from reservation_scheduler.core.config import settings
from reservation_scheduler.core.exceptions import StaleStateError
from reservation_scheduler.schemas.events import IntervalPayload, ReservationExpiringSoon
from reservation_scheduler.services.reservation_lifecycle import (
    ReservationLifecycleManager,
)
from reservation_scheduler.utils.notifications import dispatch_safely

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    expired: List[str] = field(default_factory=list)
    promoted: List[str] = field(default_factory=list)
    expiring_notices: List[str] = field(default_factory=list)
    lapsed_entries: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "expired": list(self.expired),
            "promoted": list(self.promoted),
            "expiring_notices": list(self.expiring_notices),
            "lapsed_entries": list(self.lapsed_entries),
            "errors": list(self.errors),
        }


class ReservationSweeper:
    def __init__(
        self,
        lifecycle: ReservationLifecycleManager,
        *,
        expiring_soon_hours: Optional[float] = None,
        grace_policy: Optional[str] = None,
    ):
        self.lifecycle = lifecycle
        self.store = lifecycle.store
        self.queue = lifecycle.queue
        self.clock = lifecycle.clock
        self.expiring_soon = timedelta(
            hours=expiring_soon_hours
            if expiring_soon_hours is not None
            else settings.EXPIRING_SOON_HOURS
        )
        self.grace_policy = grace_policy or settings.WAITLIST_GRACE_POLICY

    def run_once(self) -> SweepResult:
        result = SweepResult(started_at=self.clock.now())
        self._expire_due(result)
        self._notify_expiring_soon(result)
        self._lapse_unclaimed(result)
        result.finished_at = self.clock.now()

        logger.info(
            f"Sweep finished: {len(result.expired)} expired, "
            f"{len(result.promoted)} promoted, "
            f"{len(result.expiring_notices)} expiring-soon notices, "
            f"{len(result.lapsed_entries)} lapsed, {len(result.errors)} errors"
        )
        return result

    def _expire_due(self, result: SweepResult) -> None:
        try:
            due = self.store.list_due_for_expiration(self.clock.now())
        except Exception as e:
            logger.error(f"Could not list holds due for expiration: {e}", exc_info=True)
            result.errors.append(f"list_due_for_expiration: {e}")
            return

        logger.debug(f"Found {len(due)} holds due for expiration")
        for reservation in due:
            try:
                outcome = self.lifecycle.expire(reservation.id)
            except Exception as e:
                logger.error(
                    f"Failed to expire reservation {reservation.id}: {e}", exc_info=True
                )
                result.errors.append(f"{reservation.id}: {e}")
                continue

            if outcome.expired:
                result.expired.append(reservation.id)
            if outcome.promoted_entry is not None:
                result.promoted.append(outcome.promoted_entry.id)
            result.errors.extend(f"{reservation.id}: {err}" for err in outcome.errors)

    def _notify_expiring_soon(self, result: SweepResult) -> None:
        now = self.clock.now()
        try:
            upcoming = self.store.list_expiring_soon(now, now + self.expiring_soon)
        except Exception as e:
            logger.error(f"Could not list holds expiring soon: {e}", exc_info=True)
            result.errors.append(f"list_expiring_soon: {e}")
            return

        for reservation in upcoming:
            try:
                # Whoever flips the marker owns the notice
                if not self.store.claim_expiring_notice(reservation.id):
                    continue
                delivered = dispatch_safely(
                    self.lifecycle.dispatcher,
                    ReservationExpiringSoon(
                        requester_id=reservation.requester_id,
                        resource_id=reservation.resource_id,
                        interval=IntervalPayload.from_interval(reservation.interval),
                        reason=(
                            f"Hold expires at {reservation.deadline.isoformat()}; "
                            f"convert or extend it to keep the slot"
                        ),
                        occurred_at=now,
                        reservation_id=reservation.id,
                        deadline=reservation.deadline,
                    ),
                    result.errors,
                )
                if delivered:
                    result.expiring_notices.append(reservation.id)
                else:
                    # Give the next tick a chance to deliver it
                    self.store.release_expiring_notice(reservation.id)
            except Exception as e:
                logger.error(
                    f"Failed expiring-soon notice for {reservation.id}: {e}",
                    exc_info=True,
                )
                result.errors.append(f"{reservation.id}: {e}")

    def _lapse_unclaimed(self, result: SweepResult) -> None:
        cutoff = self.clock.now() - self.queue.grace
        try:
            unclaimed = self.store.list_notified_before(cutoff)
        except Exception as e:
            logger.error(f"Could not list unclaimed promotions: {e}", exc_info=True)
            result.errors.append(f"list_notified_before: {e}")
            return

        for entry in unclaimed:
            try:
                self.queue.lapse(entry.id, self.grace_policy)
            except StaleStateError:
                # Claimed or withdrawn in the meantime
                continue
            except Exception as e:
                logger.error(
                    f"Failed to lapse waitlist entry {entry.id}: {e}", exc_info=True
                )
                result.errors.append(f"{entry.id}: {e}")
                continue
            result.lapsed_entries.append(entry.id)

            resource_id = entry.offered_resource_id or entry.resource_id
            try:
                if not self.lifecycle.detector.is_free(
                    resource_id, entry.date, entry.start_time, entry.end_time
                ):
                    continue
                promoted = self.queue.promote_next(
                    resource_id,
                    entry.date,
                    entry.start_time,
                    entry.end_time,
                    exclude_ids=[entry.id],
                    reason=f"Waitlist entry {entry.id} did not claim the slot in time",
                    errors=result.errors,
                )
            except Exception as e:
                logger.error(
                    f"Failed to re-promote after lapse of {entry.id}: {e}",
                    exc_info=True,
                )
                result.errors.append(f"{entry.id}: {e}")
                continue
            if promoted is not None:
                result.promoted.append(promoted.id)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Expire overdue holds and promote waiting requesters."
    )
    parser.add_argument(
        "--once", action="store_true", help="run a single sweep and exit"
    )
    args = parser.parse_args(argv)

    from reservation_scheduler.core.logging_config import configure_logging
    from reservation_scheduler.services.factory import get_sweeper

    configure_logging()

    if args.once:
        result = get_sweeper().run_once()
        for error in result.errors:
            logger.warning(f"Sweep error: {error}")
        return 0 if result.ok else 1

    from reservation_scheduler.scheduler import init_scheduler, shutdown_scheduler

    init_scheduler()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted; waiting for the running sweep to finish")
    finally:
        shutdown_scheduler()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
