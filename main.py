#!/usr/bin/env python3
"""
ONVIF Translation Gateway
Presents non-conformant cameras as standards-compliant ONVIF devices
"""

import os
import logging
from flask import Flask, Response, request, jsonify
from flask_cors import CORS

from camera_manager import CameraManager
from config_manager import ConfigManager
from onvif_services import ONVIFGateway
from subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = 'INFO', log_file: str = None):
    """Configure root logging once for the process"""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )


def create_app(gateway: ONVIFGateway):
    """Create Flask application"""
    app = Flask(__name__)
    CORS(app)

    def soap_response(camera_id, service, subscription_ref=None):
        body = request.get_data(as_text=True)
        status, payload, content_type = gateway.handle_request(camera_id, service, body, subscription_ref)
        return Response(payload, status=status, content_type=content_type)

    @app.route('/onvif/<camera_id>/device_service', methods=['POST'])
    def device_service(camera_id):
        return soap_response(camera_id, 'device_service')

    @app.route('/onvif/<camera_id>/media_service', methods=['POST'])
    def media_service(camera_id):
        return soap_response(camera_id, 'media_service')

    @app.route('/onvif/<camera_id>/Media2', methods=['POST'])
    def media2_service(camera_id):
        return soap_response(camera_id, 'Media2')

    @app.route('/onvif/<camera_id>/event_service', methods=['POST'])
    def event_service(camera_id):
        return soap_response(camera_id, 'event_service')

    @app.route('/onvif/<camera_id>/subscription/<sub_id>', methods=['POST'])
    def subscription(camera_id, sub_id):
        return soap_response(camera_id, 'subscription', sub_id)

    @app.route('/health')
    def health():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'cameras': len(gateway.camera_manager.list_camera_ids()),
            'subscriptions': len(gateway.subscriptions),
        })

    @app.route('/api/cameras', methods=['GET'])
    def get_cameras():
        """Get all configured cameras, without credentials"""
        return jsonify([endpoint.to_dict() for endpoint in gateway.camera_manager.get_endpoints()])

    @app.route('/api/subscriptions', methods=['GET'])
    def get_subscriptions():
        """Get active pull-point subscriptions"""
        return jsonify([s.to_dict() for s in gateway.subscriptions.list_subscriptions()])

    return app


def build_gateway(config_manager: ConfigManager):
    """Register cameras and start the subscription engine"""
    camera_manager = CameraManager()
    for endpoint in config_manager.get_cameras():
        camera_manager.add_camera(endpoint)

    subscription_manager = SubscriptionManager()
    subscription_manager.start()

    return ONVIFGateway(camera_manager, subscription_manager, config_manager.get_base_url())


def main():
    """Main application entry point"""
    setup_logging(os.getenv('LOG_LEVEL', 'INFO'), os.getenv('LOG_FILE'))

    config_manager = ConfigManager()
    setup_logging(config_manager.proxy['log_level'], os.getenv('LOG_FILE'))

    logger.info("Starting ONVIF translation gateway")

    gateway = build_gateway(config_manager)
    host, port = config_manager.get_listen_address()

    try:
        app = create_app(gateway)
        logger.info(f"Listening on {host}:{port}, advertising {gateway.base_url}")
        app.run(host=host, port=port, threaded=True,
                debug=(config_manager.proxy['log_level'] == 'DEBUG'), use_reloader=False)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise
    finally:
        gateway.subscriptions.shutdown()


if __name__ == '__main__':
    main()
