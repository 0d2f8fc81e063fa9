"""
PKI Hierarchy - a root CA, four intermediate CAs and the certificates they issue.
"""

__version__ = "2.1.0"
