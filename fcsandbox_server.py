#!/usr/bin/env python3

import argparse
import sys

import uvicorn

from fcsandbox import __version__
from fcsandbox.api import create_app
from fcsandbox.config_manager import DEFAULT_CONFIG_FILE, ConfigManager
from fcsandbox.errors import ConfigurationError
from fcsandbox.log import get_logger, set_level
from fcsandbox.registry import InstanceRegistry
from fcsandbox.shutdown import GRACEFUL_SIGNALS, ShutdownController
from fcsandbox.vm_lifecycle import VMLifecycle

logger = get_logger("fcsandbox.server")


class OrchestratorServer(uvicorn.Server):
    """uvicorn server that hands SIGINT/SIGTERM to the shutdown controller

    The controller starts asking guests to shut down while uvicorn drains
    in-flight requests; the lifespan shutdown then force-stops anything left.
    """

    def __init__(self, config, shutdown_controller):
        super().__init__(config)
        self.shutdown_controller = shutdown_controller

    def handle_exit(self, sig, frame):
        if sig in GRACEFUL_SIGNALS:
            self.shutdown_controller.handle_signal(sig)
        super().handle_exit(sig, frame)


def build_parser():
    parser = argparse.ArgumentParser(description="Firecracker sandbox orchestrator HTTP service")
    parser.add_argument("--version", "-v", action="version", version=f"fcsandbox {__version__}")
    parser.add_argument("--config", help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("--host", help="Address to listen on (can be set in config as LISTEN_HOST)")
    parser.add_argument("--port", type=int, help="Port to listen on (can be set in config as LISTEN_PORT)")
    parser.add_argument("--kernel", help="Guest kernel image path (can be set in config as KERNEL_IMAGE)")
    parser.add_argument("--firecracker-bin", help="Firecracker binary (can be set in config as FIRECRACKER_BIN)")
    parser.add_argument("--socket-prefix", help="Directory for API sockets (can be set in config as SOCKET_PATH_PREFIX)")
    parser.add_argument("--cpus", type=int, help="Default vCPUs per instance (can be set in config as CPUS)")
    parser.add_argument("--memory", type=int, help="Default memory in MiB per instance (can be set in config as MEMORY)")
    parser.add_argument("--shutdown-timeout", type=float, help="Seconds to wait for a clean guest shutdown (can be set in config as SHUTDOWN_TIMEOUT)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level (can be set in config as LOG_LEVEL)")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Initialize configuration manager with config file, CLI flags win
    config_manager = ConfigManager(config_file=args.config)
    config_manager.apply_args(args)

    log_level = config_manager.get('LOG_LEVEL', 'INFO').upper()
    set_level(log_level)

    # Perform all preflight checks and environment setup
    try:
        config_manager.setup_environment()
    except ConfigurationError as e:
        logger.error(f"Environment setup failed: {e}")
        sys.exit(1)

    shutdown_timeout = config_manager.get_float('SHUTDOWN_TIMEOUT')
    registry = InstanceRegistry()
    controller = ShutdownController(registry, shutdown_timeout=shutdown_timeout)
    lifecycle = VMLifecycle.from_config(config_manager, registry=registry, shutdown_controller=controller)
    app = create_app(lifecycle, controller, watcher_timeout=shutdown_timeout)

    server_config = uvicorn.Config(
        app,
        host=config_manager.get('LISTEN_HOST'),
        port=config_manager.get_int('LISTEN_PORT'),
        log_level=log_level.lower(),
    )
    server = OrchestratorServer(server_config, controller)

    # SIGQUIT stops every VMM but leaves the API serving
    controller.install()

    logger.info(f"Listening on {server_config.host}:{server_config.port}")
    server.run()


if __name__ == "__main__":
    main()
