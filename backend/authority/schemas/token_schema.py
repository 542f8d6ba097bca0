"""
schemas/token_schema.py — Marshmallow schemas for the OAuth endpoints.

Validation responsibility:
  - This file: presence of the fields each grant type needs, field types,
    lengths, scope syntax.
  - services/grant_authority.py: everything that needs the store, the
    directory or the verifier (credential checks, scope ceilings, expiry).

Unknown fields are ignored rather than rejected: OAuth clients routinely
send extra parameters (state, nonce, ...) that the token endpoint must
tolerate.

IMPORTANT: All schemas inherit from marshmallow.Schema directly so they can
           be used outside an app context (unit tests, CLI).
"""

from __future__ import annotations

from marshmallow import (
    EXCLUDE,
    Schema,
    ValidationError,
    fields,
    post_load,
    validate,
    validates,
    validates_schema,
)

from backend.authority.services.grant_authority import (
    AuthorizationCodeCredentials,
    ClientCredentials,
    ClientIdentity,
    GrantRequest,
    PasswordCredentials,
    RefreshTokenCredentials,
)
from backend.authority.services.interfaces import GrantType
from backend.authority.services.token_codec import parse_scope

_MISSING = "Missing data for required field."

# Fields each grant type cannot do without.
_REQUIRED_BY_GRANT = {
    GrantType.PASSWORD.value:           ("username", "password"),
    GrantType.AUTHORIZATION_CODE.value: ("code", "redirect_uri"),
    GrantType.REFRESH_TOKEN.value:      ("refresh_token",),
    GrantType.CLIENT_CREDENTIALS.value: ("client_secret",),
}


def _validate_scope(value: str) -> None:
    try:
        parse_scope(value)
    except ValueError:
        raise ValidationError("Scope must be space-delimited scope tokens.")


class TokenRequestSchema(Schema):
    """
    POST /oauth/token

    Client credentials arrive either in the body (client_id / client_secret)
    or through HTTP Basic auth; the route folds Basic auth into the payload
    before loading.
    """

    class Meta:
        unknown = EXCLUDE

    grant_type = fields.Str(
        required=True,
        validate=validate.OneOf(
            [grant.value for grant in GrantType],
            error="Unsupported grant_type.",
        ),
    )

    client_id = fields.Str(required=True, validate=validate.Length(min=1, max=64))
    client_secret = fields.Str(load_default=None, load_only=True)

    username = fields.Str(load_default=None, validate=validate.Length(max=64))
    password = fields.Str(load_default=None, load_only=True)
    code = fields.Str(load_default=None, load_only=True, validate=validate.Length(max=128))
    redirect_uri = fields.Str(load_default=None, validate=validate.Length(max=2048))
    refresh_token = fields.Str(load_default=None, load_only=True, validate=validate.Length(max=128))

    scope = fields.Str(load_default="", validate=[validate.Length(max=1024), _validate_scope])

    @validates_schema
    def validate_grant_fields(self, data: dict, **kwargs) -> None:
        required = _REQUIRED_BY_GRANT.get(data.get("grant_type"), ())
        missing = {name: [_MISSING] for name in required if not data.get(name)}
        if missing:
            raise ValidationError(missing)

    @post_load
    def make_grant_request(self, data: dict, **kwargs) -> GrantRequest:
        grant_type = GrantType(data["grant_type"])
        if grant_type == GrantType.PASSWORD:
            credentials = PasswordCredentials(data["username"], data["password"])
        elif grant_type == GrantType.AUTHORIZATION_CODE:
            credentials = AuthorizationCodeCredentials(data["code"], data["redirect_uri"])
        elif grant_type == GrantType.REFRESH_TOKEN:
            credentials = RefreshTokenCredentials(data["refresh_token"])
        else:
            credentials = ClientCredentials()

        return GrantRequest(
            grant_type=grant_type,
            credentials=credentials,
            client=ClientIdentity(data["client_id"], data["client_secret"]),
            requested_scopes=parse_scope(data["scope"]),
        )


class RevokeSchema(Schema):
    """POST /oauth/revoke"""

    class Meta:
        unknown = EXCLUDE

    token = fields.Str(required=True, load_only=True, validate=validate.Length(min=1, max=4096))
    token_type_hint = fields.Str(
        load_default=None,
        validate=validate.OneOf(["access_token", "refresh_token"]),
    )


class IntrospectSchema(Schema):
    """POST /oauth/introspect"""

    class Meta:
        unknown = EXCLUDE

    token = fields.Str(required=True, load_only=True, validate=validate.Length(min=1, max=4096))

    @validates("token")
    def validate_token_shape(self, value: str, **kwargs) -> None:
        if any(ch.isspace() for ch in value):
            raise ValidationError("Token must not contain whitespace.")
