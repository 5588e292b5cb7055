"""Production server entry points (gunicorn runner and WSGI module)."""
