"""kubemirror: a live local mirror of Kubernetes resource collections."""

__version__ = "0.1.0"
