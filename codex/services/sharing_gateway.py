"""
Sharing Gateway

Capability-token facade: a SharedObjectLink lets anyone holding its id
view one object, create one object of a model, or update one object.
All writes are delegated to the ObjectStore, so submissions go through
the same Validation Pipeline as internal writes, with a null changelog
actor. The object owner of a link-created record is the link's creator.

Single-use links (``expires_on_submit``) are deleted inside the same
transaction as the object write; the delete must hit exactly one row,
so two concurrent submissions cannot both succeed.
"""

import logging

from sqlalchemy import delete, select

from codex.core.exceptions import (
    FieldError,
    LinkExpiredError,
    LinkTypeMismatchError,
    NotFoundError,
    ValidationFailedError,
)
from codex.models.data_object import DataObject
from codex.models.sharing import LINK_TYPES, SharedObjectLink
from codex.services.object_store import RESERVED_KEYS, ObjectStore
from codex.utils.helpers import atomic, parse_bool, parse_datetime_input

logger = logging.getLogger(__name__)

SUBMITTABLE_TYPES = ("create", "update")


class SharingGateway:
    """Share-link management and the public resolve/submit path."""

    def __init__(self, session, store: ObjectStore | None = None):
        self.session = session
        self.store = store or ObjectStore(session)

    # ── Link management (authenticated) ───────────────────────────────

    def create_link(self, data: dict, actor_id: str | None = None) -> SharedObjectLink:
        link_type = data.get("link_type")
        model_id = data.get("model_id")
        object_id = data.get("data_object_id") or None

        errors = []
        if link_type not in LINK_TYPES:
            errors.append(FieldError("link_type", "Must be one of: view, create, update", link_type))
        if not model_id:
            errors.append(FieldError("model_id", "model_id is required", model_id))
        if link_type in ("view", "update") and not object_id:
            errors.append(FieldError(
                "data_object_id", "data_object_id is required for view and update links", None,
            ))
        if link_type == "create" and object_id:
            errors.append(FieldError(
                "data_object_id", "create links must not reference an object", object_id,
            ))
        try:
            expires_at = parse_datetime_input(data.get("expires_at"))
        except ValueError as exc:
            errors.append(FieldError("expires_at", str(exc), data.get("expires_at")))
            expires_at = None
        if errors:
            raise ValidationFailedError(errors)

        with atomic(self.session):
            self.store.registry.get_model(model_id)
            if object_id:
                obj = self.store.get_by_id(object_id)
                if obj.model_id != model_id:
                    raise NotFoundError("DataObject", object_id)
            link = SharedObjectLink(
                link_type=link_type,
                model_id=model_id,
                data_object_id=object_id,
                created_by_user_id=actor_id,
                expires_at=expires_at,
                expires_on_submit=parse_bool(data.get("expires_on_submit")),
            )
            self.session.add(link)
            self.session.flush()

        logger.info("Share link %s (%s) created for model %s", link.id, link_type, model_id,
                    extra={"link_id": link.id, "model_id": model_id, "actor_id": actor_id})
        return link

    def list_links(self, *, model_id: str | None = None,
                   object_id: str | None = None) -> list[SharedObjectLink]:
        if not model_id and not object_id:
            return []
        query = select(SharedObjectLink)
        if object_id:
            query = query.where(SharedObjectLink.data_object_id == object_id)
        else:
            query = query.where(SharedObjectLink.model_id == model_id)
        query = query.order_by(SharedObjectLink.created_at.desc())
        return list(self.session.execute(query).scalars())

    def get_link(self, link_id: str) -> SharedObjectLink:
        link = self.session.get(SharedObjectLink, link_id)
        if link is None:
            raise NotFoundError("SharedObjectLink", link_id)
        return link

    def delete_link(self, link_id: str, actor_id: str | None = None) -> None:
        with atomic(self.session):
            self.session.delete(self.get_link(link_id))
        logger.info("Share link %s deleted", link_id,
                    extra={"link_id": link_id, "actor_id": actor_id})

    # ── Public path ───────────────────────────────────────────────────

    def resolve(self, link_id: str) -> dict:
        """Return ``{"link", "model", "object"}`` for rendering an external form."""
        link = self.get_link(link_id)
        if link.is_expired():
            logger.warning("Expired share link %s resolved", link_id, extra={"link_id": link_id})
            raise LinkExpiredError(link_id)
        model = self.store.registry.get_model(link.model_id)
        obj = None
        if link.link_type in ("view", "update"):
            obj = self.store.get_by_id(link.data_object_id)
        return {"link": link, "model": model, "object": obj}

    def submit(self, link_id: str, form_data: dict) -> DataObject:
        """
        Create or update through the link. Link checks, the single-use
        delete and the object write share one transaction.
        """
        form = {k: v for k, v in (form_data or {}).items() if k not in RESERVED_KEYS}

        with atomic(self.session):
            link = self.session.execute(
                select(SharedObjectLink).where(SharedObjectLink.id == link_id).with_for_update()
            ).scalar_one_or_none()
            if link is None:
                raise NotFoundError("SharedObjectLink", link_id)
            if link.is_expired():
                raise LinkExpiredError(link_id)
            if link.link_type not in SUBMITTABLE_TYPES:
                raise LinkTypeMismatchError(link_id, link.link_type, "submit")

            link_type = link.link_type
            model_id = link.model_id
            object_id = link.data_object_id
            owner_id = link.created_by_user_id

            if link.expires_on_submit:
                result = self.session.execute(
                    delete(SharedObjectLink).where(SharedObjectLink.id == link_id)
                )
                if result.rowcount != 1:
                    raise NotFoundError("SharedObjectLink", link_id)

            if link_type == "create":
                obj = self.store.create(model_id, form, actor_id=None, owner_id=owner_id)
            else:
                obj = self.store.update(model_id, object_id, form, actor_id=None)

        logger.info("Share link %s submitted (%s) → object %s", link_id, link_type, obj.id,
                    extra={"link_id": link_id, "object_id": obj.id, "model_id": model_id})
        return obj
