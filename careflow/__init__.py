"""
CareFlow Authorization & Lifecycle Core
=======================================

The decision core of a multi-role clinical records backend.  For every
mutation of an appointment, consultation, patient record, lab order,
lab result, prescription or document it decides whether the acting
principal holds the required permission, whether they are entitled to
the specific record, and whether the requested change is a legal move
in the record's lifecycle.

Permissions and roles come from a versioned YAML registry loaded once at
start-up.  Every mutation outcome is written to an append-only,
hash-chained audit log on a best-effort basis.

HTTP routing, authentication, persistence and blob storage are external
collaborators; the core sees them only through ``Principal``,
``careflow.store.Repository`` and ``careflow.store.Directory``.
"""

__version__ = "0.1.0"
