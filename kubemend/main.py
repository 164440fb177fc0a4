"""
Entry point for the kubemend operator.
"""

import logging

import kopf

LOG = logging.getLogger(__name__)


def main():
    # registers the handlers
    from . import controller

    LOG.info("Starting kubemend operator...")
    try:
        if controller.config.watch_namespace:
            kopf.run(namespaces=[controller.config.watch_namespace])
        else:
            kopf.run(clusterwide=True)
    except KeyboardInterrupt:
        LOG.info("Operator shutdown requested")


if __name__ == "__main__":
    main()
