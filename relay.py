from __future__ import annotations
from typing import Optional, Sequence
import argparse, configparser, sys
import traceback

import uvloop

from relay_server import RelayConfig, logger, parse_address, run


class Launcher:
    def __init__(self, argv: Optional[Sequence[str]] = None) -> None:
        self.args: argparse.Namespace = parser.parse_args(argv)
        self.config: configparser.ConfigParser = configparser.ConfigParser()
        # A missing file is not an error; defaults apply.
        self.config.read(self.args.config)

    def config_ini(self) -> None:
        self.listen: str = (
            self.args.listen
            if self.args.listen is not None
            else self.config.get("relay", "listen", fallback="0.0.0.0:4040")
        )
        self.upstream: str = (
            self.args.upstream
            if self.args.upstream is not None
            else self.config.get("relay", "upstream", fallback="0.0.0.0:4044")
        )
        self.dial_timeout: float = (
            self.args.dial_timeout
            if self.args.dial_timeout is not None
            else self.config.getfloat("relay", "dial_timeout", fallback=15.0)
        )
        self.buffer_size: int = (
            self.args.buffer_size
            if self.args.buffer_size is not None
            else self.config.getint("relay", "buffer_size", fallback=1024)
        )
        self.log_level: str = (
            self.args.log_level
            if self.args.log_level is not None
            else self.config.get("relay", "log_level", fallback="INFO")
        ).upper()

        # Fail here rather than on the first accepted connection.
        parse_address(self.listen)
        parse_address(self.upstream)
        if self.dial_timeout <= 0:
            raise ValueError(f"dial_timeout must be positive, got {self.dial_timeout}")
        if self.buffer_size <= 0:
            raise ValueError(f"buffer_size must be positive, got {self.buffer_size}")

        logger.setLevel(self.log_level)

    @property
    def relay_config(self) -> RelayConfig:
        return RelayConfig(dial_timeout=self.dial_timeout, buffer_size=self.buffer_size)

    def start(self) -> int:
        try:
            self.config_ini()
        except (ValueError, configparser.Error) as e:
            logger.critical("Invalid configuration: %s", e)
            return 1

        logger.info("tcp relay %s -> %s", self.listen, self.upstream)
        try:
            uvloop.run(run(self.listen, self.upstream, self.relay_config))
        except KeyboardInterrupt:
            logger.info("Interrupted")
            return 0
        except OSError as e:
            logger.critical("Cannot listen on %s: %s", self.listen, e)
            return 1
        except Exception:
            logger.critical("Relay crashed %s", traceback.format_exc())
            return 1
        logger.info("server stop.")
        return 0


parser = argparse.ArgumentParser(description="Transparent TCP relay to a single upstream")
parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
parser.add_argument('--listen', dest='listen', type=str, metavar='HOST:PORT', default=None, help='Address to accept clients on (default: 0.0.0.0:4040)')
parser.add_argument('--upstream', dest='upstream', type=str, metavar='HOST:PORT', default=None, help='Address every connection is relayed to (default: 0.0.0.0:4044)')
parser.add_argument('--dial-timeout', dest='dial_timeout', type=float, metavar='SECONDS', default=None, help='Upstream connect timeout (default: 15)')
parser.add_argument('--buffer-size', dest='buffer_size', type=int, metavar='BYTES', default=None, help='Copy buffer size per direction (default: 1024)')
parser.add_argument('--log-level', dest='log_level', type=str.upper, metavar='LEVEL', default=None, choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"], help='TRACE, DEBUG, INFO, WARNING or ERROR (default: INFO)')


def main(argv: Optional[Sequence[str]] = None) -> int:
    return Launcher(argv).start()


if __name__ == "__main__":
    sys.exit(main())
