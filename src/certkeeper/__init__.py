"""certkeeper: certificate lifecycle manager.

Keeps a collection of X.509 certificates valid through scheduled
renewal and pushes every renewed artifact to the places that consume it.
"""

__version__ = "1.0.0"
