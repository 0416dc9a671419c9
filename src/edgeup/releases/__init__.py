"""Release catalog access."""
from edgeup.releases.catalog import (
    list_tags,
    parse_tag_listing,
    parse_tag,
    parse_constraint,
    resolve,
    asset_urls,
    plugin_asset_urls,
    list_release_assets,
    parse_plugin_assets,
)

__all__ = [
    "list_tags",
    "parse_tag_listing",
    "parse_tag",
    "parse_constraint",
    "resolve",
    "asset_urls",
    "plugin_asset_urls",
    "list_release_assets",
    "parse_plugin_assets",
]
