import logging
from flask import Flask, request, jsonify #type: ignore
from flask_cors import CORS #type: ignore
from printer.manager import PrinterManager
from printer.exceptions import PrinterError, UnknownTemplateError

logger = logging.getLogger(__name__)

class Router:

    def __init__(self, printer_manager: PrinterManager):
        """Initialize Flask app and routes."""
        self.printer_manager = printer_manager

        # Create Flask app instance
        self.app = Flask(__name__)
        CORS(self.app, send_wildcard=True)

        # Register routes with decorators
        self._register_routes()

    def _register_routes(self):
        """Register all Flask routes with decorators."""
        self.app.route('/api/status', methods=['GET'])(self.get_status)
        self.app.route('/api/print', methods=['POST'])(self.print_receipt)
        self.app.route('/api/reset', methods=['POST'])(self.reset_printer)
        self.app.register_error_handler(404, self.not_found)
        self.app.register_error_handler(405, self.method_not_allowed)


    def get_status(self):
        """
        Get printer connectivity status.

        Returns:
            JSON with bluetooth_connected, device_exists and worker_ready
        """
        return jsonify(self.printer_manager.get_status()), 200


    def print_receipt(self):
        """
        Print a receipt from a template.

        Expects JSON: {"template": "certificate", "text": "..."}
        (template defaults to "plain")

        Returns:
            JSON with ok flag and acknowledged byte count
        """
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({'error': 'Invalid JSON'}), 400

        template = payload.get('template') or 'plain'
        text = payload.get('text')
        if not text or not isinstance(text, str):
            return jsonify({'error': 'Missing text'}), 400

        logger.info(f"[Router] Print request: template={template} text=\"{text[:40]}...\"")

        try:
            written = self.printer_manager.print_template(template, text)
        except UnknownTemplateError as e:
            logger.warning(f"[Router] {e}")
            return jsonify({'error': str(e)}), 400
        except PrinterError as e:
            logger.error(f"[Router] Print failed: {e}")
            return jsonify({'error': str(e)}), 500

        logger.info("[Router] Print OK")
        return jsonify({'ok': True, 'bytes': written}), 200


    def reset_printer(self):
        """
        Full Bluetooth power cycle, re-pair and worker restart.

        Returns:
            JSON with ok flag, or the error reason
        """
        try:
            logger.info("[Router] Reset request received")
            self.printer_manager.force_reset()
            return jsonify({'ok': True}), 200
        except PrinterError as e:
            logger.error(f"[Router] Reset failed: {e}")
            return jsonify({'error': str(e)}), 500


    def not_found(self, error):
        return jsonify({'error': 'Not found'}), 404

    def method_not_allowed(self, error):
        return jsonify({'error': 'Method not allowed'}), 405
