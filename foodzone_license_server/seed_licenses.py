import sys

from foodzone_license_server.errors import LicenseError
from foodzone_license_server.models import to_iso
from foodzone_license_server.server import configure_logging, create_app, get_service

USAGE = (
    "Usage:\n"
    "  python -m foodzone_license_server.seed_licenses generate COUNT [MONTHS]\n"
    "  python -m foodzone_license_server.seed_licenses deactivate KEY\n"
    "  python -m foodzone_license_server.seed_licenses stats\n"
    "\n"
    "Settings come from the process environment (DATABASE_URL, ADMIN_USERNAME,\n"
    "ADMIN_PASSWORD, PORT, LOG_LEVEL). A .env file is not read automatically;\n"
    "export it first, e.g. `set -a; . ./.env; set +a`."
)


def generate(count: int, months=None) -> None:
    for lic in get_service().generate(count, months):
        expires = to_iso(lic.expires_at) or "never"
        print(f"[OK] {lic.license_key}  expires: {expires}")


def deactivate(key: str) -> None:
    get_service().deactivate(key)
    print(f"[OK] deactivated: {key}")


def stats() -> None:
    for name, value in get_service().stats().items():
        print(f"{name:>8}: {value}")


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print(USAGE)
        return 1

    configure_logging()
    command, rest = args[0], args[1:]
    app = create_app()
    with app.app_context():
        try:
            if command == "generate" and rest:
                months = int(rest[1]) if len(rest) > 1 else None
                generate(int(rest[0]), months)
            elif command == "deactivate" and len(rest) == 1:
                deactivate(rest[0])
            elif command == "stats":
                stats()
            else:
                print(USAGE)
                return 1
        except (LicenseError, ValueError) as e:
            print(f"[ERROR] {e}")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
