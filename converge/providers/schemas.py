"""
Schemas of the built-in resource types: remote state bucket, lock table,
OIDC federation trust and assumable role.
"""
from converge.providers.base import ResourceSchema

OBJECT_STORE_BUCKET = ResourceSchema(
    type_name="object-store-bucket",
    required=frozenset({"bucket"}),
    optional={
        "versioning": True,
        "encryption": "AES256",
        "block_public_access": True,
        "force_destroy": False,
        "tags": {},
    },
    immutable=frozenset({"bucket"}),
    outputs=frozenset({"id", "arn", "regional_domain_name"}),
)

LOCK_TABLE = ResourceSchema(
    type_name="lock-table",
    required=frozenset({"name"}),
    optional={
        "hash_key": "LockID",
        "billing_mode": "PAY_PER_REQUEST",
        "tags": {},
    },
    immutable=frozenset({"name", "hash_key"}),
    outputs=frozenset({"id", "arn"}),
)

FEDERATION_TRUST = ResourceSchema(
    type_name="federation-trust",
    required=frozenset({"url", "client_ids"}),
    optional={
        "thumbprints": [],
        "tags": {},
    },
    immutable=frozenset({"url"}),
    outputs=frozenset({"id", "arn"}),
)

ASSUMABLE_ROLE = ResourceSchema(
    type_name="assumable-role",
    required=frozenset({"name", "assume_role_policy"}),
    optional={
        "description": "",
        "path": "/",
        "managed_policy_arns": [],
        "max_session_duration": 3600,
        "tags": {},
    },
    immutable=frozenset({"name", "path"}),
    outputs=frozenset({"id", "arn", "unique_id"}),
)
