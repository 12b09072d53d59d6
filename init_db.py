import os

from config import Settings
from database import initialize_db

settings = Settings.from_env()

# Create the directories the server writes into
for directory in (settings.media_root, settings.videos_dir, settings.subtitles_dir):
    os.makedirs(directory, exist_ok=True)

print("Initializing database...")
try:
    initialize_db(settings.database_path)
finally:
    print("Database initialization complete.")
