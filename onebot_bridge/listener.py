"""
Reverse-HTTP event ingress.

Some gateways (NapCat among them) can POST events to an HTTP endpoint instead
of, or in addition to, pushing them over the event WebSocket. The Flask app
built here feeds those bodies into the same decode-and-dispatch path as the
stream, and waitress serves it on a daemon thread.
"""

import logging
import threading
import time

from flask import Flask, request
from waitress import serve

logger = logging.getLogger(__name__)


def WebhookListenerConstructor(client, path: str = '/') -> Flask:
    """
    Build the Flask app receiving gateway events.

    Args:
        client: GatewayClient whose HandleEventPayload() receives every body
        path: Route the gateway posts to

    Returns:
        Flask: App answering "OK" for every event that decodes and 400 for
               bodies that do not. Dispatch happens in the background, so the
               gateway never waits on plugins.
    """
    app = Flask(__name__)

    @app.route(path, methods=['POST'])
    def WebhookListener():
        if client.HandleEventPayload(request.get_data()) is None:
            return "Error: Malformed event", 400
        return "OK", 200

    return app


def WebhookListenerServiceStarter(app: Flask, host: str, port: int, startupGrace: float = 2) -> threading.Thread:
    """
    Serve `app` with waitress on a daemon thread.

    Waits `startupGrace` seconds and checks the thread is still alive, which
    catches the common failure of the port already being in use.

    Raises:
        RuntimeError: the server thread died during startup
    """
    logger.info(f"Initializing webhook listener on http://{host}:{port} ...")

    def run_webhook_server():
        try:
            serve(app, host=host, port=port)
        except Exception as exception:
            logger.error(f"Webhook listener run failed: {exception}")

    webhookListenerThread = threading.Thread(target=run_webhook_server, daemon=True, name="WebhookListenerThread")
    webhookListenerThread.start()

    time.sleep(startupGrace)

    if not webhookListenerThread.is_alive():
        raise RuntimeError(f"Webhook listener failed to start. Check whether port {port} is occupied.")

    logger.info("Webhook listener started successfully.")
    return webhookListenerThread
