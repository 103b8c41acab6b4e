import logging
from gunicorn.glogging import Logger

PROBE_PATHS = ('/', '/health')


class CustomGunicornLogger(Logger):
    """
    A custom Gunicorn logger that sends the relay's application logs through
    Gunicorn's handlers and filters Kubernetes health probes out of the
    access logs.
    """
    def setup(self, cfg):
        """
        This method is called by Gunicorn at startup to configure logging.
        """
        super().setup(cfg)

        for logger_name in ('flask.app', 'soap_relay'):
            app_logger = logging.getLogger(logger_name)
            for handler in self.error_log.handlers:
                app_logger.addHandler(handler)

    def access(self, resp, req, environ, request_time):
        """
        Skip access log lines for kube-probe GETs on the liveness endpoints.
        """
        user_agent: str = environ.get("HTTP_USER_AGENT", "")

        if user_agent.startswith('kube-probe/') and req.method == 'GET' and req.path in PROBE_PATHS:
            return

        super().access(resp, req, environ, request_time)
