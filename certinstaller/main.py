import os
import sys
import logging
import argparse

from .cert_manager import CertManager
from .errors import CertInstallerError

DEFAULT_CONFIG_PATH = os.getenv('CERTINSTALLER_CONFIG', '/etc/certinstaller.yaml')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("CertInstaller.Main")


def setup_logging(level: str, log_file: str = None):
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)
    # paramiko logs every transport event at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="certinstaller",
        description="Install TLS certificates on firewalls, BMCs and other appliances",
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the YAML config file")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--keep-going", action="store_true",
                        help="Keep updating the remaining targets after one fails")
    parser.add_argument("--check", action="store_true",
                        help="Load the config and run pre-flight checks only")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        manager = CertManager.from_config_file(args.config, keep_going=args.keep_going)
    except CertInstallerError as e:
        logger.critical(f"Failed to load config: {e}")
        return 1

    try:
        if args.check:
            manager.preflight()
            logger.info("Configuration and certificates OK")
        else:
            manager.run()
    except CertInstallerError as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
