from django.db import connection

from dispatch.scheduling import ThreadingScheduler


def _closing_connection(callback):
    def run():
        try:
            callback()
        finally:
            # each timer fires on its own short-lived thread with its own connection
            connection.close()
    return run


class DjangoThreadingScheduler(ThreadingScheduler):
    """
    ThreadingScheduler whose callbacks release their thread's database connection.
    """

    def call_later(self, delay_seconds, callback, name=""):
        return super().call_later(delay_seconds, _closing_connection(callback), name)

    def call_every(self, interval_seconds, callback, name=""):
        return super().call_every(interval_seconds, _closing_connection(callback), name)
