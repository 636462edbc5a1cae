from config import DATABASE_URL
from database import Database

# Create all tables
database = Database(DATABASE_URL).open()
database.create_all()
database.close()
print("All tables created successfully!")
