import os

# Select the testing profile before the application module reads its settings
os.environ.setdefault("APP_ENV", "testing")
