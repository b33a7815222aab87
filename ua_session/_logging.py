# =============================================================================
# UA Session -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("ua_session")
