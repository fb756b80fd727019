"""Test package. Runs Qt headless and keeps the application data out of the user's profile."""
import os
import tempfile

os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
os.environ.setdefault('SALESTRACKER_CONFIG_DIR', tempfile.mkdtemp(prefix='salestracker_test_'))
