import os
import logging
from celery import Celery

from sync_engine.config import DEFAULT_SYNC_INTERVAL

# --- Настройка логирования --- (Базовая)
LOG_FILE = os.getenv("SYNC_LOG_FILE", "sync_worker.log")
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),  # Вывод в файл
        logging.StreamHandler()  # Вывод в консоль
    ]
)
logger = logging.getLogger(__name__)

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://redis:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://redis:6379/0')
SYNC_INTERVAL = float(os.getenv('SYNC_INTERVAL_SECONDS', DEFAULT_SYNC_INTERVAL))

celery_app = Celery(
    'sync_worker',
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=['sync_engine.tasks.sync_pass']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    enable_utc=True,
    beat_schedule={
        'run-sync-pass': {
            'task': 'run_sync_pass',
            'schedule': SYNC_INTERVAL,
        },
    }
)

if __name__ == '__main__':
    celery_app.start()
