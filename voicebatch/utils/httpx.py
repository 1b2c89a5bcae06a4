from voicebatch.core.config import Settings, settings as default_settings

USER_AGENT = "voicebatch/0.1.0"

def get_httpx_base_url(settings: Settings = default_settings) -> str:
    return settings.VENDOR_BASE_URL.rstrip("/")

def get_httpx_headers(settings: Settings = default_settings):
    return {
        "xi-api-key": settings.VENDOR_API_KEY,
        "User-Agent": USER_AGENT,
    }
