import sqlite3
from paygate.db.session import DATABASE_URL

db_path = DATABASE_URL.replace("sqlite+aiosqlite:///", "", 1)

conn = sqlite3.connect(db_path)
cursor = conn.cursor()

print("Платёжные таблицы в базе данных:")
cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'payment_%';")
tables = cursor.fetchall()

for table in tables:
    cursor.execute(f"SELECT COUNT(*) FROM {table[0]};")
    print(f"\n=== {table[0]} ({cursor.fetchone()[0]} rows) ===")
    cursor.execute(f"PRAGMA table_info({table[0]});")
    for col in cursor.fetchall():
        print(f"{col[1]} ({col[2]})")

print("\nЗаказы по статусам:")
cursor.execute("SELECT status, COUNT(*) FROM payment_orders GROUP BY status;")
for status, count in cursor.fetchall():
    print(f"{status}: {count}")

conn.close()
