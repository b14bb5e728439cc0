"""Session snapshot shared across run processes."""

from testfleet.session.state import SNAPSHOT_PATH_ENV, SessionState

__all__ = ["SNAPSHOT_PATH_ENV", "SessionState"]
