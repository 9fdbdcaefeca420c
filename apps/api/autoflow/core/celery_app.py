from celery import Celery

from autoflow.core.config import get_settings

settings = get_settings()

celery_app = Celery("autoflow_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "run-scheduled-automations": {
        "task": "autoflow.tasks.run_scheduled_automations",
        "schedule": 60.0,
    },
}


@celery_app.task(name="autoflow.tasks.run_scheduled_automations")
def run_scheduled_automations_task() -> int:
    from autoflow.automation.engine import automation_engine

    return automation_engine.run_scheduled_automations()
