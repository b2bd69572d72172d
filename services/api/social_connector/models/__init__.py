"""Connector database models."""

from social_connector.models.app_credential import AppCredential
from social_connector.models.content_item import ContentItem, ContentKind
from social_connector.models.external_account import ExternalAccount
from social_connector.models.oauth_state import OAuthState

__all__ = [
    "AppCredential",
    "OAuthState",
    "ExternalAccount",
    "ContentItem",
    "ContentKind",
]
