"""Run the admission webhook and controller: ``python -m guardian``."""

import uvicorn

from guardian.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "guardian.api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        ssl_certfile=settings.tls_cert_file,
        ssl_keyfile=settings.tls_key_file,
        log_config=None,
    )


if __name__ == "__main__":
    main()
