from django.apps import AppConfig


class BetriebskostenConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "betriebskosten"
    verbose_name = "Betriebskosten"

    def ready(self):
        from . import signals  # noqa: F401
