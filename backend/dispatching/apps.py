from django.apps import AppConfig


class DispatchingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "backend.dispatching"
    label = "dispatching"

    def ready(self):
        from . import signals
        signals.connect()
