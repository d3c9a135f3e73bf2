"""
Adhan Relay Worker
Runs the planner, the expiry sweep and the delayed job consumers, and owns the HLS relays
"""
import logging
import signal
import sys
import time

from app import create_app
from config import Config
from models import db
from utils.hls import get_relay_manager
from utils.push import get_push_gateway
from utils.scheduler import init_scheduler, run_scheduler_cycle, shutdown_scheduler

logger = logging.getLogger(__name__)


def main():
    """Main entry point"""
    app = create_app(log_file=Config.WORKER_LOG_FILE)
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    with app.app_context():
        db.create_all()

    # First tick immediately so a restart does not wait a full interval
    if app.config.get('SCHEDULER_ENABLED'):
        run_scheduler_cycle(app)

    init_scheduler(app)
    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))
    logger.info('Adhan Relay worker started')

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info('Received shutdown signal')
    finally:
        shutdown_scheduler()
        with app.app_context():
            get_relay_manager().stop_all()
            get_push_gateway().close()
        logger.info('Adhan Relay worker stopped')


if __name__ == '__main__':
    main()
