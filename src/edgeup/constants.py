"""Release catalog and artifact naming constants."""

# Upstream repository
WASMEDGE_OWNER = "WasmEdge"
WASMEDGE_REPO = "WasmEdge"
CATALOG_URL = f"https://github.com/{WASMEDGE_OWNER}/{WASMEDGE_REPO}.git"
RELEASE_BASE_URL = f"https://github.com/{WASMEDGE_OWNER}/{WASMEDGE_REPO}/releases/download"
RELEASE_API_URL = f"https://api.github.com/repos/{WASMEDGE_OWNER}/{WASMEDGE_REPO}/releases/tags"

# Artifact naming
PACKAGE_NAME = "WasmEdge"
ARTIFACT_TEMPLATE = "{package}-{version}-{token}.{ext}"
PLUGIN_ARTIFACT_TEMPLATE = "{package}-plugin-{name}-{version}-{token}.{ext}"
URL_TEMPLATE = "{base}/{tag}/{filename}"
RELEASE_API_TEMPLATE = "{api}/{tag}"
CHECKSUM_SUFFIX = ".sha256"

# Environment variable read by the runtime to locate plugins
PLUGIN_PATH_VAR = "WASMEDGE_PLUGIN_PATH"

LATEST = "latest"
