"""
schemas/record_schema.py — Cache serialisation of grant records.

CachedGrantStore keeps refresh-token lookups in the KeyValueCache as JSON
strings. This schema is the only place that knows that shape; anything it
cannot load is treated as a cache miss.
"""

from __future__ import annotations

from datetime import timezone

from marshmallow import Schema, fields, post_load

from backend.authority.services.grant_store import RefreshTokenRecord


class RefreshTokenRecordSchema(Schema):
    id = fields.Str(required=True)
    token_hash = fields.Str(required=True)
    principal_id = fields.Str(required=True)
    client_id = fields.Str(required=True)
    scopes = fields.List(fields.Str(), required=True)
    expires_at = fields.AwareDateTime(required=True, default_timezone=timezone.utc)
    revoked = fields.Bool(required=True)
    revoked_reason = fields.Str(allow_none=True, load_default=None)
    predecessor_id = fields.Str(allow_none=True, load_default=None)
    access_token_id = fields.Str(allow_none=True, load_default=None)
    access_token_expires_at = fields.AwareDateTime(
        allow_none=True,
        load_default=None,
        default_timezone=timezone.utc,
    )

    @post_load
    def make_record(self, data: dict, **kwargs) -> RefreshTokenRecord:
        data["scopes"] = frozenset(data["scopes"])
        return RefreshTokenRecord(**data)


refresh_record_schema = RefreshTokenRecordSchema()
