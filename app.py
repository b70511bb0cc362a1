"""
Main Flask application for the Bluetooth receipt print server.

Endpoints:
    POST /api/print   - Print a receipt  { "template": "certificate", "text": "..." }
    POST /api/reset   - Full BT power cycle + re-pair + restart worker
    GET  /api/status  - Printer connectivity check
"""

import logging
import os
import threading

from printer.config import load_config
from printer.manager import PrinterManager

from router import Router

log_level = logging.DEBUG if os.environ.get('DEBUG') else logging.INFO

logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    force=True  # Ensure this overrides any prior configuration
)

logger = logging.getLogger(__name__)
logger.info(f"Logging level set to: {logging.getLevelName(log_level)}")


def create_app(config_path: str = None):
    """
    Build the print server.

    Returns:
        Tuple of (Router, PrinterManager)
    """
    config = load_config(config_path)
    printer_manager = PrinterManager(config=config)
    router = Router(printer_manager)
    return router, printer_manager


def main():
    printer_manager = None
    try:
        logger.info("Initializing printer manager...")
        router, printer_manager = create_app()
        config = printer_manager.config

        # Bring the printer up in the background so the server answers status right away
        threading.Thread(target=printer_manager.warm_up, name='printer-warmup', daemon=True).start()

        if config['keepalive']['enabled']:
            printer_manager.start_keepalive()

        host = config['server']['host']
        port = config['server']['port']
        debug = config['server']['debug']

        logger.info(f"Starting server on {host}:{port}")
        router.app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        logger.info("Shutting down application...")
        if printer_manager:
            printer_manager.shutdown()
        logger.info("Cleanup complete")


if __name__ == '__main__':
    main()
