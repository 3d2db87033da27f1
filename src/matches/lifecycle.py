from datetime import datetime
from typing import Optional
from transitions import Machine, MachineError
import logging

from matches.models import Match, MatchStatus
from servers.models import ServerStatus

LOG = logging.getLogger(__name__)


class StaleReport(Exception):
    """Server report older than the last accepted one"""
    pass


class InvalidTransition(Exception):
    """Requested lifecycle change is not allowed from the current status"""
    pass


ACTIVE = [
    MatchStatus.LOADING,
    MatchStatus.WARMUP,
    MatchStatus.KNIFE,
    MatchStatus.LIVE,
    MatchStatus.PAUSED,
    MatchStatus.HALFTIME,
    MatchStatus.POSTGAME,
]
NON_TERMINAL = [MatchStatus.PENDING, MatchStatus.VETO] + ACTIVE

# Server states that map one-to-one onto match states
SERVER_TO_MATCH = {
    ServerStatus.LOADING: MatchStatus.LOADING,
    ServerStatus.WARMUP: MatchStatus.WARMUP,
    ServerStatus.KNIFE: MatchStatus.KNIFE,
    ServerStatus.LIVE: MatchStatus.LIVE,
    ServerStatus.PAUSED: MatchStatus.PAUSED,
    ServerStatus.HALFTIME: MatchStatus.HALFTIME,
    ServerStatus.POSTGAME: MatchStatus.POSTGAME,
}


def _values(statuses):
    return [s.value for s in statuses]


LIFECYCLE_TRANSITIONS = [
    {"trigger": "start_veto", "source": MatchStatus.PENDING.value, "dest": MatchStatus.VETO.value},
    {"trigger": "load", "source": _values([MatchStatus.PENDING, MatchStatus.VETO, MatchStatus.ERROR]),
     "dest": MatchStatus.LOADING.value, "after": "mark_loaded"},
    {"trigger": "complete", "source": MatchStatus.POSTGAME.value, "dest": MatchStatus.COMPLETED.value,
     "after": "mark_completed"},
    {"trigger": "fail", "source": _values(NON_TERMINAL), "dest": MatchStatus.ERROR.value, "before": "record_error"},
    {"trigger": "cancel", "source": _values(NON_TERMINAL + [MatchStatus.ERROR]), "dest": MatchStatus.CANCELLED.value,
     "before": "record_error"},
] + [
    # A server seen again after going offline brings its match back out of error
    {"trigger": f"sync_{target.value}", "source": _values(ACTIVE + [MatchStatus.ERROR]), "dest": target.value}
    for target in SERVER_TO_MATCH.values()
]


class MatchLifecycle:
    """State machine bound to a single Match row; every transition writes match.status"""

    def __init__(self, match: Match):
        self.match = match
        self.machine = Machine(
            model=self,
            states=_values(MatchStatus),
            transitions=LIFECYCLE_TRANSITIONS,
            initial=MatchStatus(match.status).value,
            auto_transitions=False,
            after_state_change="sync_status",
        )

    @property
    def status(self) -> MatchStatus:
        return MatchStatus(self.state)

    def sync_status(self, *args, **kwargs):
        if self.match.status != self.status:
            LOG.info(f"Match {self.match.slug}: {self.match.status} -> {self.status}")
        self.match.status = self.status

    def record_error(self, reason: Optional[str] = None):
        self.match.error_reason = reason

    def mark_loaded(self, *args, **kwargs):
        self.match.loaded_at = datetime.now()
        self.match.error_reason = None

    def mark_completed(self, *args, **kwargs):
        self.match.completed_at = datetime.now()

    def transition(self, trigger: str, *args):
        """Fire a trigger, translating machine errors into InvalidTransition"""
        try:
            return self.trigger(trigger, *args)
        except MachineError as e:
            raise InvalidTransition(f"Match {self.match.slug} cannot {trigger} from {self.state}: {e.value}")

    def reconcile(self, status: ServerStatus, updated_at: Optional[int] = None) -> bool:
        """Advance the stored status to a server report.

        Returns True when the match status changed. Reports for terminal
        matches and idle reports are ignored; reports strictly older than the
        last accepted one raise StaleReport.
        """
        if self.status.is_terminal or status == ServerStatus.IDLE:
            return False

        last = self.match.server_updated_at
        if updated_at is not None and last is not None and updated_at < last:
            raise StaleReport(
                f"Report for {self.match.slug} at {updated_at} is older than accepted {last}"
            )
        if updated_at is not None:
            self.match.server_updated_at = updated_at

        if status == ServerStatus.ERROR:
            if self.status == MatchStatus.ERROR:
                return False
            self.transition("fail", "Server reported an error")
            return True

        target = SERVER_TO_MATCH[status]
        if target == self.status:
            return False
        if f"sync_{target.value}" not in self.machine.get_triggers(self.state):
            LOG.debug(f"Ignoring {status} report for {self.match.slug} while {self.status}")
            return False
        self.transition(f"sync_{target.value}")
        return True
