#!/usr/bin/env python3
"""Main entry point for the NDB Cluster metrics exporter"""
import asyncio
import sys
from config import Config
from app.service import ExporterService
from logging_config import setup_structured_logging, get_logger, log_service_startup, log_error


def main():
    """Main application entry point"""
    try:
        config = Config()

        setup_structured_logging(config)
        logger = get_logger(__name__)
        log_service_startup(logger, config)

        service = ExporterService(config)
        asyncio.run(service.run())

    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger = get_logger(__name__)
        log_error(logger, e, {"component": "main", "phase": "startup"})
        sys.exit(1)


if __name__ == '__main__':
    main()
