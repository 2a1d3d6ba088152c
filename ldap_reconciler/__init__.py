"""
LDAP Reconciler - Declarative, idempotent maintenance of LDAP objects and groups.

This package computes the minimal set of LDAP Add/Modify/Delete operations needed
to bring a directory entry into a desired state, and normalizes entries read back
from the directory so the next run can compare against them.
"""

__version__ = "1.0.0"
__author__ = "LDAP Reconciler Team"
