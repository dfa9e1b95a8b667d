from __future__ import annotations

from keyrotor.domain.state import ResourcePolicy


# Resources encrypted by this release. Pinned per version; extend by shipping a new release.
DEFAULT_ENCRYPTED_RESOURCES: tuple[str, ...] = (
    "secrets",
    "configmaps",
    "routes.route.openshift.io",
    "oauthaccesstokens.oauth.openshift.io",
    "oauthauthorizetokens.oauth.openshift.io",
)


def default_resource_policy() -> ResourcePolicy:
    return ResourcePolicy.from_names(DEFAULT_ENCRYPTED_RESOURCES)
