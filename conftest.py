"""Shared pytest fixtures for the audit test suite."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from packages.audit_core import (
    AuditActor,
    AuditContext,
    AuditContextProvider,
    define_entity,
    foreign_key,
    to,
)
from packages.audit_core.domain import EntityConfig
from packages.audit_orm import (
    AuditedClient,
    AuditOptions,
    SchemaMetadata,
    audit_log_model,
    model,
    relation,
    scalar,
)
from packages.audit_orm.testing import InMemoryDataClient


def build_schema() -> SchemaMetadata:
    """Blog-shaped schema covering list, single and composite relations."""
    return SchemaMetadata(
        [
            model(
                "User",
                scalar("id", id=True, default="uuid"),
                scalar("email", unique=True),
                scalar("name"),
                scalar("password"),
                scalar("role", default="member"),
                scalar("last_seen"),
                relation("posts", "Post", list=True),
                relation("profile", "Profile"),
            ),
            model(
                "Profile",
                scalar("id", id=True, default="uuid"),
                scalar("bio"),
                scalar("user_id", unique=True),
                relation("user", "User", fields=["user_id"], references=["id"]),
            ),
            model(
                "Post",
                scalar("id", id=True, default="uuid"),
                scalar("title"),
                scalar("published", "Boolean"),
                scalar("metadata", "Json"),
                scalar("author_id"),
                relation("author", "User", fields=["author_id"], references=["id"]),
                relation("comments", "Comment", list=True),
                relation("tags", "Tag", list=True),
            ),
            model(
                "Comment",
                scalar("id", id=True, default="uuid"),
                scalar("body"),
                scalar("post_id"),
                relation("post", "Post", fields=["post_id"], references=["id"]),
                relation("reactions", "Reaction", list=True),
            ),
            model(
                "Reaction",
                scalar("id", id=True, default="uuid"),
                scalar("kind"),
                scalar("comment_id"),
                relation("comment", "Comment", fields=["comment_id"], references=["id"]),
            ),
            model(
                "Tag",
                scalar("id", id=True, default="uuid"),
                scalar("name", unique=True),
                scalar("post_id"),
                relation("post", "Post", fields=["post_id"], references=["id"]),
            ),
            model(
                "Setting",
                scalar("id", "Int", id=True, default="autoincrement"),
                scalar("key", unique=True),
                scalar("value"),
            ),
            audit_log_model(),
        ]
    )


def default_entities() -> dict[str, EntityConfig]:
    """Entity configuration used unless a test supplies its own."""
    return {
        "User": define_entity(type="User"),
        "Profile": define_entity(type="Profile", aggregates=[to("User", foreign_key("user_id"))]),
        "Post": define_entity(type="Post", aggregates=[to("User", foreign_key("author_id"))]),
        "Comment": define_entity(type="Comment"),
        "Reaction": define_entity(type="Reaction"),
        "Tag": define_entity(type="Tag"),
        "Setting": define_entity(type="Setting"),
    }


@pytest.fixture()
def schema() -> SchemaMetadata:
    return build_schema()


@pytest.fixture()
def data_client(schema: SchemaMetadata) -> InMemoryDataClient:
    return InMemoryDataClient(schema)


@pytest.fixture()
def provider() -> AuditContextProvider:
    return AuditContextProvider()


@pytest.fixture()
def actor() -> AuditActor:
    return AuditActor(category="user", type="User", id="actor-1", name="Ada")


@pytest.fixture()
def audit_context(actor: AuditActor) -> AuditContext:
    return AuditContext(actor=actor, request={"request_id": "req-1", "ip": "10.0.0.1"})


@pytest.fixture()
def entities() -> dict[str, EntityConfig]:
    return default_entities()


@pytest.fixture()
def make_client(
    data_client: InMemoryDataClient,
    provider: AuditContextProvider,
    entities: dict[str, EntityConfig],
) -> Callable[..., AuditedClient]:
    """Return a factory building audited clients over the shared store."""

    def _make(
        *, random_source: Callable[[], float] | None = None, **overrides: Any
    ) -> AuditedClient:
        options = AuditOptions(**{"entities": entities, **overrides})
        kwargs: dict[str, Any] = {"provider": provider}
        if random_source is not None:
            kwargs["random_source"] = random_source
        return AuditedClient(data_client, options, **kwargs)

    return _make


@pytest.fixture()
def audit_rows(data_client: InMemoryDataClient) -> Callable[..., list[dict[str, Any]]]:
    """Return a reader for persisted audit rows, optionally filtered by entity type."""

    def _rows(entity_type: str | None = None) -> list[dict[str, Any]]:
        rows = data_client.rows("AuditLog")
        if entity_type is None:
            return rows
        return [row for row in rows if row["entity_type"] == entity_type]

    return _rows
