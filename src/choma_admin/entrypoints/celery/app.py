from celery import Celery

from choma_admin import config


def get_celery_app(redis_host: str = "", redis_port: int = 0) -> Celery:  # type: ignore[no-any-unimported]
    # Configure Celery (using Redis as both broker and result backend)
    redis_cfg = config.RedisCfg.from_env()
    if redis_host:
        redis_cfg.host = redis_host
    if redis_port:
        redis_cfg.port = redis_port
    redis_cfg.db = "0"
    app = Celery(
        "choma_admin",
        broker=redis_cfg.to_url(),
        backend=redis_cfg.to_url(),
    )
    # audit entries and alerts travel as plain dicts
    app.conf.task_serializer = "json"
    app.conf.result_serializer = "json"
    app.conf.accept_content = ["application/json"]
    # a task is only acknowledged once it has run, so a worker crash redelivers it
    app.conf.task_acks_late = True
    app.conf.task_reject_on_worker_lost = True
    app.conf.task_always_eager = config.bool_environ_get("CELERY_ALWAYS_EAGER")
    return app


app = get_celery_app()
