"""
realty_identity — authentication, registration and verification core
of the real-estate listings portal.
"""

__version__ = "1.0.0"
