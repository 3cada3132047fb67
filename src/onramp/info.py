
UNINITIALIZED = "uninitialized"
CONTROL_CONNECTED = "control-connected"
IDENTITY_READY = "identity-ready"
SESSION_ACTIVE = "session-active"
CLOSED = "closed"

STATES = [UNINITIALIZED, CONTROL_CONNECTED, IDENTITY_READY, SESSION_ACTIVE,
          CLOSED]

class SessionInfo:
    """I record what a TransportSession has done so far. Sessions only move
    forward through STATES, and CLOSED is terminal."""

    def __init__(self):
        self.state = UNINITIALIZED
        self.stageStatuses = {}
        self.listenerStatus = None
        self.address = None
        self.establishedAt = None
        self.closedAt = None

    def _advance(self, state):
        if self.state == CLOSED:
            return
        if STATES.index(state) > STATES.index(self.state):
            self.state = state

    def _set_stage_status(self, stage, status):
        self.stageStatuses[stage] = status
    def _set_listener_status(self, status):
        self.listenerStatus = status
    def _set_address(self, address):
        self.address = address
    def _set_established_at(self, when):
        self.establishedAt = when
    def _set_closed_at(self, when):
        self.closedAt = when

    def is_closed(self):
        return self.state == CLOSED
