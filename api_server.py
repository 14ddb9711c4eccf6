#!/usr/bin/env python
"""
ASGI entrypoint for the billing reconciler
Run with `uvicorn api_server:app` or `python api_server.py`
"""
import logging
import sys

from billing_reconciler.config import config
from billing_reconciler.main import create_app

app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger = logging.getLogger(__name__)
    logger.info(f"Starting Billing Reconciler API server on port {config.PORT}")
    logger.info(f"Webhook endpoint: http://0.0.0.0:{config.PORT}/v1/billing/webhooks/processor")

    try:
        uvicorn.run(
            app,
            host="0.0.0.0",
            port=config.PORT,
            log_config=None,
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)
