"""
Document versioning, sharing and soft deletion.

**State machine:**

    ACTIVE -> SUPERSEDED | ARCHIVED | DELETED
    ARCHIVED -> ACTIVE | DELETED

SUPERSEDED and DELETED are terminal.

Each upload of a new version creates a new record (version n+1) that
points back with ``replaces_document``; the previous version moves to
``superseded`` and points forward with ``replaced_by``.  The previous
version is superseded with a conditional write before the new one is
stored, so following ``replaced_by`` from any version always ends at
exactly one live document.  If storing the new version fails, the
previous one is restored to its former status.

Shares grant other users access to one document version.  A share with
an ``expires_at`` in the past is treated as absent.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from careflow.access import manages_resource, require_access, require_modify
from careflow.exceptions import InvalidTransition, NotFound, ResourceAccessDenied
from careflow.lifecycle import CheckContext, RecordService, StateMachine, apply_transition
from careflow.models import (
    Document,
    DocumentShare,
    DocumentStatus,
    Principal,
    Role,
    ShareAccessLevel,
)
from careflow.rbac import require_any_permission, require_authenticated, require_permission
from careflow.refs import Ref, resolve_id, same_ref

logger = logging.getLogger(__name__)


DOCUMENT_LIFECYCLE: StateMachine[DocumentStatus] = StateMachine(
    "Document",
    {
        DocumentStatus.ACTIVE: {
            DocumentStatus.SUPERSEDED,
            DocumentStatus.ARCHIVED,
            DocumentStatus.DELETED,
        },
        DocumentStatus.ARCHIVED: {DocumentStatus.ACTIVE, DocumentStatus.DELETED},
        DocumentStatus.SUPERSEDED: set(),
        DocumentStatus.DELETED: set(),
    },
    initial=DocumentStatus.ACTIVE,
)


def active_shares(document: Document, now: Optional[datetime] = None) -> list[DocumentShare]:
    """Shares that have not expired."""
    return [s for s in document.shared_with if s.is_active(now)]


def has_access(document: Document, user: Ref, now: Optional[datetime] = None) -> bool:
    """True for the uploader and for users holding an unexpired share."""
    if same_ref(document.uploaded_by, user):
        return True
    return document.share_for(user, now) is not None


def _require_uploader(document: Document, principal: Principal, action: str) -> None:
    if principal.role != Role.ADMIN and not manages_resource(document, principal):
        raise ResourceAccessDenied(f"You are not allowed to {action} this document.")


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def check_upload(principal: Optional[Principal], document: None, ctx: CheckContext) -> DocumentStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "upload_documents", ctx.registry)
    if principal.role == Role.PATIENT:
        own = ctx.directory.patient_profile_for_user(principal.user_id) if ctx.directory else None
        if own is None or not same_ref(ctx.params.get("patient"), own):
            raise ResourceAccessDenied("Patients can only upload documents to their own record.")
    return DOCUMENT_LIFECYCLE.initial


def check_view(principal: Optional[Principal], document: Document, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_any_permission(principal, ["view_all_documents", "view_documents"], ctx.registry)
    require_access(document, principal, ctx.directory, ctx.registry, ctx.now)
    if document.status == DocumentStatus.DELETED and principal.role != Role.ADMIN:
        raise NotFound("Document not found.")


def check_new_version(principal: Optional[Principal], document: Document, ctx: CheckContext) -> DocumentStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "edit_documents", ctx.registry)
    require_modify(document, principal, ctx.directory, ctx.now)
    DOCUMENT_LIFECYCLE.validate(document.status, DocumentStatus.SUPERSEDED)
    return DocumentStatus.SUPERSEDED


def check_share(principal: Optional[Principal], document: Document, ctx: CheckContext) -> None:
    principal = require_authenticated(principal)
    require_permission(principal, "share_documents", ctx.registry)
    _require_uploader(document, principal, "share")
    if document.status != DocumentStatus.ACTIVE:
        raise InvalidTransition(
            f"Document cannot be shared in status '{document.status.value}'."
        )


def check_archive(principal: Optional[Principal], document: Document, ctx: CheckContext) -> DocumentStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "delete_documents", ctx.registry)
    _require_uploader(document, principal, "archive")
    DOCUMENT_LIFECYCLE.validate(document.status, DocumentStatus.ARCHIVED)
    return DocumentStatus.ARCHIVED


def check_restore(principal: Optional[Principal], document: Document, ctx: CheckContext) -> DocumentStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "delete_documents", ctx.registry)
    _require_uploader(document, principal, "restore")
    DOCUMENT_LIFECYCLE.validate(document.status, DocumentStatus.ACTIVE)
    return DocumentStatus.ACTIVE


def check_delete(principal: Optional[Principal], document: Document, ctx: CheckContext) -> DocumentStatus:
    principal = require_authenticated(principal)
    require_permission(principal, "delete_documents", ctx.registry)
    _require_uploader(document, principal, "delete")
    DOCUMENT_LIFECYCLE.validate(document.status, DocumentStatus.DELETED)
    return DocumentStatus.DELETED


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentService(RecordService):
    """Stores document metadata, versions and shares.

    Binary content is never handled here; ``storage_key`` points at it.
    """

    resource_type = "document"

    def get(self, principal: Optional[Principal], document_ref: Ref) -> Document:
        document = self.load(document_ref)
        check_view(principal, document, self.context())
        return document

    def upload(
        self,
        principal: Optional[Principal],
        patient: Ref,
        title: str,
        storage_key: str,
        checksum: str = "",
        category: str = "other",
    ) -> Document:
        with self.recording(principal, "upload") as audit:
            check_upload(principal, None, self.context(patient=patient))
            document = self.repository.create(Document(
                title=title,
                category=category,
                patient=resolve_id(patient),
                uploaded_by=principal.user_id,
                storage_key=storage_key,
                checksum=checksum,
                created_at=self.now(),
            ))
            audit["resource_id"] = document.id
            logger.info("Document %s uploaded (v1)", document.id)
            return document

    def create_new_version(
        self,
        principal: Optional[Principal],
        document_ref: Ref,
        storage_key: str,
        checksum: str = "",
        version_notes: str = "",
        title: Optional[str] = None,
    ) -> Document:
        """Store version n+1 and supersede version n.

        Raises:
            InvalidTransition: If the document is not the live version.
            Conflict: If another new version was stored concurrently.
        """
        with self.recording(principal, "new_version", resolve_id(document_ref)) as audit:
            current = self.load(document_ref)
            target = check_new_version(principal, current, self.context())
            new_id = str(uuid.uuid4())
            apply_transition(
                DOCUMENT_LIFECYCLE, self.repository, current, target,
                changes={"replaced_by": new_id},
                expected={"replaced_by": None},
            )
            try:
                successor = self.repository.create(Document(
                    id=new_id,
                    title=title or current.title,
                    category=current.category,
                    patient=resolve_id(current.patient),
                    uploaded_by=principal.user_id,
                    storage_key=storage_key,
                    checksum=checksum,
                    version=current.version + 1,
                    replaces_document=current.id,
                    version_notes=version_notes,
                    shared_with=list(current.shared_with),
                    created_at=self.now(),
                ))
            except Exception:
                logger.error("Storing new version of document %s failed; restoring it", current.id)
                self.repository.update_if(
                    current.id,
                    {"status": target, "replaced_by": new_id},
                    {"status": current.status, "replaced_by": None},
                )
                raise
            audit["metadata"]["new_version_id"] = successor.id
            logger.info("Document %s superseded by %s (v%d)", current.id, successor.id, successor.version)
            return successor

    def latest_version(self, document_ref: Ref) -> Document:
        """Follow ``replaced_by`` links to the newest version."""
        document = self.load(document_ref)
        seen = {document.id}
        while document.replaced_by is not None:
            document = self.load(document.replaced_by)
            if document.id in seen:
                raise InvalidTransition("Document version chain is cyclic.")
            seen.add(document.id)
        return document

    def version_history(self, document_ref: Ref) -> list[Document]:
        """All versions from the first to the newest."""
        document = self.latest_version(document_ref)
        history = [document]
        while document.replaces_document is not None:
            document = self.load(document.replaces_document)
            history.append(document)
        return list(reversed(history))

    def share(
        self,
        principal: Optional[Principal],
        document_ref: Ref,
        user: Ref,
        access_level: Optional[ShareAccessLevel] = None,
        expires_at: Optional[datetime] = None,
    ) -> Document:
        """Grant or update a user's access to a document."""
        with self.recording(principal, "share", resolve_id(document_ref)) as audit:
            document = self.load(document_ref)
            check_share(principal, document, self.context())
            user_id = resolve_id(user)
            entry = DocumentShare(
                user=user_id,
                access_level=access_level or self.settings.default_share_access_level,
                shared_by=principal.user_id,
                shared_at=self.now(),
                expires_at=expires_at,
            )
            shares = [s for s in document.shared_with if not same_ref(s.user, user_id)]
            shares.append(entry)
            audit["metadata"].update(shared_with=user_id, access_level=entry.access_level.value)
            return self.repository.update_if(
                document.id,
                {"status": DocumentStatus.ACTIVE, "shared_with": document.shared_with},
                {"shared_with": shares},
            )

    def revoke_share(self, principal: Optional[Principal], document_ref: Ref, user: Ref) -> Document:
        with self.recording(principal, "revoke_share", resolve_id(document_ref)):
            document = self.load(document_ref)
            check_share(principal, document, self.context())
            shares = [s for s in document.shared_with if not same_ref(s.user, user)]
            if len(shares) == len(document.shared_with):
                raise NotFound("This document is not shared with that user.")
            return self.repository.update_if(
                document.id,
                {"shared_with": document.shared_with},
                {"shared_with": shares},
            )

    def archive(self, principal: Optional[Principal], document_ref: Ref) -> Document:
        with self.recording(principal, "archive", resolve_id(document_ref)):
            document = self.load(document_ref)
            target = check_archive(principal, document, self.context())
            return apply_transition(DOCUMENT_LIFECYCLE, self.repository, document, target)

    def restore(self, principal: Optional[Principal], document_ref: Ref) -> Document:
        with self.recording(principal, "restore", resolve_id(document_ref)):
            document = self.load(document_ref)
            target = check_restore(principal, document, self.context())
            return apply_transition(DOCUMENT_LIFECYCLE, self.repository, document, target)

    def delete(self, principal: Optional[Principal], document_ref: Ref) -> Document:
        """Soft-delete; the record stays in storage."""
        with self.recording(principal, "delete", resolve_id(document_ref)):
            document = self.load(document_ref)
            target = check_delete(principal, document, self.context())
            return apply_transition(
                DOCUMENT_LIFECYCLE, self.repository, document, target,
                changes={"deleted_at": self.now(), "deleted_by": principal.user_id},
            )
