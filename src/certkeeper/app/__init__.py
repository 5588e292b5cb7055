"""Flask application package for certkeeper.

Public API::

    from certkeeper.app import create_app
"""

from certkeeper.app.factory import create_app

__all__ = ["create_app"]
