"""
error taxonomy for the referral engine.

business rule violations subclass ValueError so callers can keep treating
them the way the rest of the code treats bad input (HTTP 400 by default).
"""


class ReferralEngineError(ValueError):
    """base class for every business rule violation raised by the engine."""


# ---------
# referral graph
# ---------

class UserNotFound(ReferralEngineError):
    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class SelfReferral(ReferralEngineError):
    def __init__(self, user_id):
        super().__init__(f"User {user_id} cannot refer themselves.")
        self.user_id = user_id


class DuplicateParent(ReferralEngineError):
    def __init__(self, child_id, existing_parent_id):
        super().__init__(
            f"User {child_id} already has a referrer ({existing_parent_id})."
        )
        self.child_id = child_id
        self.existing_parent_id = existing_parent_id


class CycleDetected(ReferralEngineError):
    def __init__(self, child_id, parent_id):
        super().__init__(
            f"Registering {parent_id} as referrer of {child_id} would create a cycle."
        )
        self.child_id = child_id
        self.parent_id = parent_id


class ReferralCodeNotFound(ReferralEngineError):
    def __init__(self, referral_code):
        super().__init__(f"No user found with referral_code={referral_code}")
        self.referral_code = referral_code


class GraphIntegrityWarning(UserWarning):
    """
    emitted when traversal runs into malformed data (a cycle or a chain
    deeper than the configured cap). traversal stops and the partial chain
    is returned.
    """


# ---------
# event ingestion
# ---------

class SourceUserNotFound(ReferralEngineError):
    def __init__(self, user_id, event_id):
        super().__init__(f"Event {event_id} references unknown user {user_id}")
        self.user_id = user_id
        self.event_id = event_id


class UnsupportedCurrency(ReferralEngineError):
    def __init__(self, currency, base_currency):
        super().__init__(
            f"No conversion rate from {currency} to {base_currency}"
        )
        self.currency = currency
        self.base_currency = base_currency


# ---------
# bonus levels
# ---------

class UnknownLevel(ReferralEngineError):
    def __init__(self, level_id):
        super().__init__(f"Unknown turnover level {level_id}")
        self.level_id = level_id


class NotAchieved(ReferralEngineError):
    def __init__(self, user_id, level_id, team_turnover, threshold):
        super().__init__(
            f"Level {level_id} not achieved by user {user_id}: "
            f"turnover {team_turnover} < threshold {threshold}"
        )
        self.user_id = user_id
        self.level_id = level_id
        self.team_turnover = team_turnover
        self.threshold = threshold


class AlreadyClaimed(ReferralEngineError):
    def __init__(self, user_id, level_id):
        super().__init__(f"Level {level_id} already claimed by user {user_id}")
        self.user_id = user_id
        self.level_id = level_id


# ---------
# payout transitions
# ---------

class RecordNotFound(ReferralEngineError):
    def __init__(self, kind, record_id):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class CommissionAlreadyPaid(ReferralEngineError):
    def __init__(self, record_id):
        super().__init__(f"Commission {record_id} is already paid")
        self.record_id = record_id


class BonusAlreadySettled(ReferralEngineError):
    def __init__(self, claim_id):
        super().__init__(f"Bonus claim {claim_id} is already settled")
        self.claim_id = claim_id
