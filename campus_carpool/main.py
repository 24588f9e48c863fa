"""Main entry point for the Campus Carpool application."""

from __future__ import annotations

import sys
from importlib import import_module
from pathlib import Path

from PyQt6.QtWidgets import QApplication, QMessageBox

if __package__ in (None, ""):
    package_root = Path(__file__).resolve().parent.parent
    if str(package_root) not in sys.path:
        sys.path.insert(0, str(package_root))
    _carpool = import_module("campus_carpool.carpool_app")
    _maps = import_module("campus_carpool.maps")
    _errors = import_module("campus_carpool.errors")
else:  # pragma: no cover - import path depends on runtime context
    _carpool = import_module(".carpool_app", package=__package__)
    _maps = import_module(".maps", package=__package__)
    _errors = import_module(".errors", package=__package__)

GoogleMapsError = _maps.GoogleMapsError
CarpoolError = _errors.CarpoolError
bootstrap_app = _carpool.bootstrap_app


def main() -> None:
    """Launch the PyQt6 Campus Carpool GUI."""
    try:
        exit_code = bootstrap_app()
    except GoogleMapsError as exc:
        app = QApplication.instance() or QApplication(sys.argv)
        QMessageBox.critical(None, "Google Maps Configuration", str(exc))
        raise SystemExit(1) from exc
    except CarpoolError as exc:
        app = QApplication.instance() or QApplication(sys.argv)
        QMessageBox.critical(None, "Ride Database", f"Campus Carpool could not start: {exc}")
        raise SystemExit(3) from exc
    except ValueError as exc:
        app = QApplication.instance() or QApplication(sys.argv)
        QMessageBox.critical(None, "Configuration Error", str(exc))
        raise SystemExit(2) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
