"""SCEP Bridge - SCEP front end for an ACME certificate authority.

Lets devices that only speak SCEP (challenge-password-gated enrollment)
obtain certificates from an ACME CA that validates domains with DNS-01
records, limiting each challenge password to a whitelist of hostnames.
"""

__version__ = "0.1.0"
