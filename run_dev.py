from device_loans.api.http_server import run_server
from device_loans.bootstrap.container import build_container
from device_loans.config.settings import Settings
from device_loans.core.logging.structured_logger import configure_logging
from device_loans.seed.seed_devices import seed_devices


def main():
    print("Initializing DEV environment...")

    # 1. Configuration
    settings = Settings()
    configure_logging(settings.LOG_LEVEL)

    # 2. Stores and services
    container = build_container(settings)

    # 3. In-memory stores start empty
    if settings.STORE_BACKEND == "memory":
        seeded = seed_devices(container.device_store)
        print(f"Seeded {seeded} devices into the in-memory store.")

    # 4. HTTP
    try:
        run_server(container)
    finally:
        container.close()


if __name__ == "__main__":
    main()
