"""
Entry point: python -m onebot_bridge [--config bridge_config.json]

Startup sequence:
1. Load configuration and set up logging
2. Discover plugins in PATHS.plugins_dir and register them
3. Dial the gateway and wait until both stream connections are up
4. Optionally start the reverse-HTTP webhook listener
5. Run until SIGINT/SIGTERM
"""

import argparse
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from onebot_bridge.client import GatewayClient
from onebot_bridge.config import ConfigLoader
from onebot_bridge.errors import ConfigError
from onebot_bridge.listener import WebhookListenerConstructor, WebhookListenerServiceStarter
from onebot_bridge.plugins import PluginDiscoverer

logger = logging.getLogger("onebot_bridge")


def ConnectionWaiter(client: GatewayClient, timeout: float) -> bool:
    """Poll until both stream connections are up or `timeout` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.IsAPIOk() and client.IsEventOk():
            return True
        time.sleep(0.2)
    return client.IsAPIOk() and client.IsEventOk()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="OneBot gateway plugin bridge")
    parser.add_argument("--config", default=None, help="JSON configuration file")
    args = parser.parse_args(argv)

    try:
        config = ConfigLoader(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=config['LOGGING']['level'],
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )

    client = GatewayClient(config)
    client.Initialize()
    client.RegisterAllPlugins(PluginDiscoverer(config['PATHS']['plugins_dir']))
    client.Connect()

    connectTimeout = config['GATEWAY']['connect_timeout_seconds']
    if not ConnectionWaiter(client, connectTimeout):
        logger.error(f"Could not reach the gateway at {config['GATEWAY']['ws_url']} within {connectTimeout}s")
        client.Close()
        return 1

    listenConfig = config['WEBHOOK_LISTEN']
    if listenConfig['enabled']:
        try:
            WebhookListenerServiceStarter(
                WebhookListenerConstructor(client, listenConfig['path']),
                listenConfig['host'],
                listenConfig['port'],
            )
        except RuntimeError as e:
            logger.error(str(e))
            client.Close()
            return 1

    stopEvent = threading.Event()

    def SignalProcessor(signalNumber: int, stackFrame) -> None:
        logger.info(f"Interrupt signal {signalNumber} detected, shutting down...")
        stopEvent.set()

    signal.signal(signal.SIGINT, SignalProcessor)
    signal.signal(signal.SIGTERM, SignalProcessor)

    status = client.GetStatus()
    if status is not None:
        logger.info(f"Gateway status: {status._asdict()}")

    stopEvent.wait()
    client.Close()
    logger.info("Bridge stopped.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
