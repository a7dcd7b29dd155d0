"""
Shift Coverage — Standalone Service
Runs independently on its own port.

Routes:
- /shift-coverage-handler   → workflow actions and inbound WhatsApp replies
- /send-nudge-whatsapp      → nudge broadcasts
- /shift-reminder-scheduler → periodic sweep (cron)
- /health
"""
import logging

import sentry_sdk

from shift_coverage import config
from shift_coverage.api import create_app

# Error tracking
if config.SENTRY_DSN:
    sentry_sdk.init(dsn=config.SENTRY_DSN, traces_sample_rate=0.1, environment=config.ENVIRONMENT)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== APP ====================
app = create_app()

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting shift coverage service on port {config.PORT}")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
