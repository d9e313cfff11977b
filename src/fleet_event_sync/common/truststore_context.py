# fleet_event_sync/common/truststore_context.py

import ssl
from ssl import SSLContext

__all__: list[str] = ['build_truststore_ssl_context']


def build_truststore_ssl_context() -> SSLContext:
    """
    Create an SSLContext that validates against the operating system trust store.

    Used when the provider is reached through a corporate TLS-inspecting proxy
    whose root certificate is installed system-wide but not in certifi.

    Returns:
        SSLContext configured with PROTOCOL_TLS_CLIENT.

    Raises:
        RuntimeError: If truststore is not installed.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'truststore is required when provider.use_truststore is true; '
            'install it with: pip install fleet-event-sync[truststore]'
        ) from import_error

    return truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
