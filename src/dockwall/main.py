import logging
import signal
import sys

from docker import from_env
from docker.errors import DockerException

from .backends import get_backend
from .config import load_policy
from .errors import BackendError, ConfigurationError
from .process import ProcessingOptions
from .reconcile import Reconciler
from .settings import Settings


def main():
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logging.basicConfig(format="%(asctime)s - %(levelname)s - %(message)s")
        logging.critical(str(e))
        sys.exit(2)

    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s - %(levelname)s - %(message)s")

    # A broken policy at startup will not fix itself, so refuse to start.
    try:
        policy = load_policy(settings.config_path)
    except ConfigurationError as e:
        logging.critical(f"Invalid policy in {settings.config_path}: {e}")
        sys.exit(2)

    try:
        docker_client = from_env()
    except DockerException as e:
        logging.critical(f"Cannot connect to Docker: {e}")
        sys.exit(1)

    backend = get_backend(settings.backend, table=policy.defaults.table)
    reconciler = Reconciler(
        docker_client,
        load_policy=lambda: load_policy(settings.config_path),
        backend=backend,
        options=ProcessingOptions(container_filter=settings.container_filter),
        dry_run=settings.dry_run,
        event_backoff=settings.event_backoff,
    )

    logging.info(f"Starting dockwall ({settings.backend} backend{', dry run' if settings.dry_run else ''})...")
    if settings.run_once:
        sys.exit(0 if reconciler.safe_cycle() else 1)

    def shutdown(signum, frame):
        logging.info("Shutting down...")
        reconciler.stop()
        if settings.clean_on_exit and not settings.dry_run:
            try:
                backend.cleanup()
            except BackendError as e:
                logging.error(f"Cleanup failed: {e}")
        raise SystemExit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    reconciler.start()
    reconciler.request()
    reconciler.listen()


if __name__ == "__main__":
    main()
