import os

# Run Qt headless so GUI tests work without a display.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
