"""
Sharing gateway tests.

Covers:
  - link creation rules per link type
  - resolve (view / update / create), expiry
  - submit: create / update through the object store, null actor,
    owner = link creator, reserved keys stripped
  - single-use links are consumed in the same transaction
"""

from datetime import datetime, timedelta, timezone

import pytest

from codex.core.exceptions import (
    LinkExpiredError,
    LinkTypeMismatchError,
    NotFoundError,
    ValidationFailedError,
)
from codex.models.changelog import ChangelogEntry
from codex.models.data_object import DataObject
from codex.models.sharing import SharedObjectLink
from codex.services.object_store import ObjectStore
from codex.services.sharing_gateway import SharingGateway


@pytest.fixture()
def lead(make_model):
    return make_model("Lead", [
        {"name": "name", "type": "string", "required": True},
        {"name": "email", "type": "string", "is_unique": True},
    ])


def _past():
    return (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()


class TestCreateLink:

    def test_view_link_needs_object(self, session, lead):
        with pytest.raises(ValidationFailedError) as exc:
            SharingGateway(session).create_link({"link_type": "view", "model_id": lead.id})
        assert exc.value.errors[0].field == "data_object_id"

    def test_create_link_must_not_reference_object(self, session, lead):
        obj = ObjectStore(session).create(lead.id, {"name": "x"})
        with pytest.raises(ValidationFailedError):
            SharingGateway(session).create_link(
                {"link_type": "create", "model_id": lead.id, "data_object_id": obj.id},
            )

    def test_unknown_link_type(self, session, lead):
        with pytest.raises(ValidationFailedError):
            SharingGateway(session).create_link({"link_type": "delete", "model_id": lead.id})

    def test_object_must_belong_to_model(self, session, lead, make_model):
        other = make_model("Other", [{"name": "x", "type": "string"}])
        obj = ObjectStore(session).create(other.id, {"x": "y"})
        with pytest.raises(NotFoundError):
            SharingGateway(session).create_link(
                {"link_type": "view", "model_id": lead.id, "data_object_id": obj.id},
            )

    def test_bad_expiry(self, session, lead):
        with pytest.raises(ValidationFailedError) as exc:
            SharingGateway(session).create_link(
                {"link_type": "create", "model_id": lead.id, "expires_at": "soon"},
            )
        assert exc.value.errors[0].field == "expires_at"

    def test_list_links(self, session, lead):
        gateway = SharingGateway(session)
        gateway.create_link({"link_type": "create", "model_id": lead.id}, actor_id="u1")
        assert len(gateway.list_links(model_id=lead.id)) == 1
        assert gateway.list_links() == []


class TestResolve:

    def test_view_link_returns_object(self, session, lead):
        obj = ObjectStore(session).create(lead.id, {"name": "x"})
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "view", "model_id": lead.id, "data_object_id": obj.id},
        )
        resolved = gateway.resolve(link.id)
        assert resolved["object"].id == obj.id
        assert resolved["model"].id == lead.id

    def test_create_link_has_no_object(self, session, lead):
        gateway = SharingGateway(session)
        link = gateway.create_link({"link_type": "create", "model_id": lead.id})
        assert gateway.resolve(link.id)["object"] is None

    def test_expired_link(self, session, lead):
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "create", "model_id": lead.id, "expires_at": _past()},
        )
        with pytest.raises(LinkExpiredError):
            gateway.resolve(link.id)

    def test_deleted_object_is_not_found(self, session, lead):
        store = ObjectStore(session)
        obj = store.create(lead.id, {"name": "x"})
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "view", "model_id": lead.id, "data_object_id": obj.id},
        )
        store.soft_delete(obj.id)
        with pytest.raises(NotFoundError):
            gateway.resolve(link.id)


class TestSubmit:

    def test_create_submission(self, session, lead):
        gateway = SharingGateway(session)
        link = gateway.create_link({"link_type": "create", "model_id": lead.id}, actor_id="sales-1")
        obj = gateway.submit(link.id, {"name": "Jane", "owner_id": "hacker", "current_state_id": "x"})

        assert obj.data == {"name": "Jane"}
        assert obj.owner_id == "sales-1"
        entry = ChangelogEntry.query.filter_by(data_object_id=obj.id).one()
        assert entry.change_type == "CREATE"
        assert entry.changed_by_user_id is None

    def test_update_submission(self, session, lead):
        obj = ObjectStore(session).create(lead.id, {"name": "Jane"}, actor_id="sales-1")
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "update", "model_id": lead.id, "data_object_id": obj.id},
        )
        gateway.submit(link.id, {"email": "jane@x.io"})
        assert session.get(DataObject, obj.id).data == {"name": "Jane", "email": "jane@x.io"}
        update = ChangelogEntry.query.filter_by(data_object_id=obj.id, change_type="UPDATE").one()
        assert update.changed_by_user_id is None

    def test_view_link_cannot_submit(self, session, lead):
        obj = ObjectStore(session).create(lead.id, {"name": "x"})
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "view", "model_id": lead.id, "data_object_id": obj.id},
        )
        with pytest.raises(LinkTypeMismatchError):
            gateway.submit(link.id, {"name": "y"})

    def test_expired_link_cannot_submit(self, session, lead):
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "create", "model_id": lead.id, "expires_at": _past()},
        )
        with pytest.raises(LinkExpiredError):
            gateway.submit(link.id, {"name": "y"})
        assert DataObject.query.count() == 0

    def test_single_use_link_consumed(self, session, lead):
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "create", "model_id": lead.id, "expires_on_submit": True},
        )
        link_id = link.id
        gateway.submit(link_id, {"name": "Jane"})
        assert session.get(SharedObjectLink, link_id) is None
        with pytest.raises(NotFoundError):
            gateway.submit(link_id, {"name": "Jane again"})
        assert DataObject.query.count() == 1

    def test_invalid_submission_keeps_single_use_link(self, session, lead):
        gateway = SharingGateway(session)
        link = gateway.create_link(
            {"link_type": "create", "model_id": lead.id, "expires_on_submit": True},
        )
        link_id = link.id
        with pytest.raises(ValidationFailedError):
            gateway.submit(link_id, {"email": "no-name@x.io"})
        assert session.get(SharedObjectLink, link_id) is not None
        assert DataObject.query.count() == 0
