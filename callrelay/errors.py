"""Error taxonomy shared by the relay and the peer session controller."""


class SignalingError(Exception):
    reason = "signaling-error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class DuplicateIdentity(SignalingError):
    reason = "duplicate-identity"

    def __init__(self, identity):
        super().__init__(f"ID '{identity}' is already taken.")
        self.identity = identity


class AlreadyRegistered(SignalingError):
    reason = "already-registered"

    def __init__(self, identity):
        super().__init__(f"Connection is already registered as '{identity}'.")
        self.identity = identity


class NotRegistered(SignalingError):
    reason = "not-registered"

    def __init__(self, message_type):
        super().__init__(f"Register before sending {message_type}.")


class TargetUnreachable(SignalingError):
    reason = "target-unreachable"

    def __init__(self, target_id):
        super().__init__(f"target {target_id} not found or not connected")
        self.target_id = target_id


class MalformedMessage(SignalingError):
    reason = "malformed-message"


class NegotiationMismatch(SignalingError):
    reason = "negotiation-mismatch"


class TransportFailure(SignalingError):
    reason = "transport-failure"
