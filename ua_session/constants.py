# =============================================================================
# UA Session -- Protocol Constants
# =============================================================================
#
# Tuning values for keep-alive, publish pipelining, sequence validation and
# reconnect. Thresholds are protocol tuning constants, not hard invariants;
# SessionConfig can override them per session.
# =============================================================================

# -- Timing (seconds) --------------------------------------------------------

KEEP_ALIVE_INTERVAL = 5.0
KEEP_ALIVE_GUARD_BAND = 1.0  # fixed, absorbs network jitter
SESSION_TIMEOUT = 60.0
OPERATION_TIMEOUT = 60.0
RECONNECT_TIMEOUT = 15.0

# -- WebSocket transport -------------------------------------------------------

WS_CONNECT_TIMEOUT = 10.0
WS_MAX_MESSAGE_SIZE = 2**20  # 1 MB
WS_CLOSE_NORMAL = 1000

# -- Publish pipeline ---------------------------------------------------------

DEFAULT_PUBLISH_REQUEST_COUNT = 1
MAX_PUBLISH_REQUEST_COUNT = 100  # hard cap

# -- Publish retry ---------------------------------------------------------------

PUBLISH_RETRY_BASE_DELAY = 0.1  # seconds, second consecutive failure onwards
PUBLISH_RETRY_MAX_DELAY = 5.0

# -- Sequencing ----------------------------------------------------------------

OUT_OF_ORDER_THRESHOLD = 10
OUTDATED_THRESHOLD = 100

# -- Observers -----------------------------------------------------------------

ACK_OBSERVER_TIMEOUT = 1.0  # max wait for ack-batching observers
SLOW_OBSERVER_WARNING = 0.5
OBSERVER_BACKLOG_LIMIT = 10_000  # undelivered events per observer before dropping

# -- Auto reconnect ------------------------------------------------------------

RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_ATTEMPTS = -1  # -1 = infinite
RECONNECT_FACTOR = 1.5
RECONNECT_ABSOLUTE_CAP = 300.0  # 5 minutes

# -- Status codes --------------------------------------------------------------

# The session or channel is gone; recoverable by reconnecting.
SESSION_FATAL_STATUS = frozenset(
    {
        "BadSessionIdInvalid",
        "BadSessionClosed",
        "BadSessionNotActivated",
        "BadIdentityTokenInvalid",
        "BadSecureChannelIdInvalid",
        "BadSecureChannelClosed",
        "BadConnectionClosed",
    }
)

# Identity or certificate rejected; reconnecting will not help.
UNRECOVERABLE_STATUS = frozenset(
    {
        "BadCertificateInvalid",
        "BadCertificateUntrusted",
        "BadCertificateRevoked",
        "BadCertificateTimeInvalid",
        "BadCertificateHostNameInvalid",
        "BadSecurityChecksFailed",
        "BadIdentityTokenRejected",
        "BadUserAccessDenied",
        "BadProtocolVersionUnsupported",
    }
)

# Republish: the server no longer holds the requested message.
STATUS_MESSAGE_NOT_AVAILABLE = "BadMessageNotAvailable"
STATUS_SEQUENCE_NUMBER_UNKNOWN = "BadSequenceNumberUnknown"

# Publish: server refuses further outstanding requests.
STATUS_TOO_MANY_PUBLISH_REQUESTS = "BadTooManyPublishRequests"

# Publish: server has no subscriptions for this session.
STATUS_NO_SUBSCRIPTION = "BadNoSubscription"

# Transfer / activate: the session id is unknown to the server.
STATUS_SESSION_ID_INVALID = "BadSessionIdInvalid"
STATUS_SUBSCRIPTION_ID_INVALID = "BadSubscriptionIdInvalid"
