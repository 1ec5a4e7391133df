"""
simu - Protocol conformance simulation engine

Drives a request/response api through scripted scenarios (injector) or
answers it from a script (responder).
"""

__version__ = "0.1.0"
