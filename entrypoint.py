"""
Gunicorn entrypoint for the SOAP mTLS Relay.

This script serves as the Docker container entrypoint for the service. It reads
the bind address and Gunicorn configuration from environment variables and
then execs into Gunicorn.

Environment Variables:
    HOST: Interface to bind (default: "0.0.0.0").
    PORT: Port to bind (default: "3000"). Hosting platforms inject this.
    GUNICORN_CMD_ARGS: Additional Gunicorn CLI arguments (default: "").
    GUNICORN_LOG_LEVEL: Log level passed to ``--log-level`` (default: "info").
    FLASK_APP: The WSGI application module (default: "wsgi:app").

Security Considerations:
    - Uses ``os.execvp`` to replace the Python process with Gunicorn, ensuring
      proper signal handling and PID 1 behavior in containers.
    - Uses ``shlex.split`` for safe parsing of GUNICORN_CMD_ARGS to prevent
      shell injection via malformed environment variables.
"""

import os
import shlex

LOGGER_CLASS = 'soap_relay.gunicorn_logging.CustomGunicornLogger'


def build_command():
    """
    Build the Gunicorn argument vector from the environment.

    Returns:
        list: The argument vector, starting with ``gunicorn``.

    Raises:
        ValueError: If PORT is not a number.
    """
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', '3000'))
    gunicorn_cmd_args = os.environ.get('GUNICORN_CMD_ARGS', '')
    log_level = os.environ.get('GUNICORN_LOG_LEVEL', 'info')
    flask_app = os.environ.get('FLASK_APP', 'wsgi:app')

    cmd = (
        f"gunicorn --bind {host}:{port} --log-level {log_level} "
        f"--logger-class {LOGGER_CLASS} {flask_app} {gunicorn_cmd_args}"
    )
    return shlex.split(cmd)


def main():
    """
    Build and exec the Gunicorn command.

    Returns:
        This function does not return; it calls ``os.execvp()`` to replace
        the current process.

    Raises:
        OSError: If ``os.execvp`` fails (e.g., gunicorn not found on PATH).
    """
    args = build_command()
    os.execvp(args[0], args)


if __name__ == '__main__':
    main()
