"""
Import a floor plan from a CSV file
CSV format: table_number,capacity
Example: T1,4
"""

import csv
import sys

from app import app, ledger
from errors import SeatingError


def import_tables_from_csv(filename='tables.csv', org_id=None):
    """Import tables from CSV file, returns the number of tables added"""

    with app.app_context():
        org_id = org_id or app.config['DEFAULT_ORG_ID']
        try:
            with open(filename, 'r', encoding='utf-8') as file:
                reader = csv.DictReader(file)

                # Validate headers
                if not reader.fieldnames or 'table_number' not in reader.fieldnames or 'capacity' not in reader.fieldnames:
                    print("❌ Error: CSV must have columns 'table_number' and 'capacity'")
                    return 0

                existing = {t.table_number for t in ledger.list_tables(org_id)}
                added = []
                line_num = 1

                for row in reader:
                    line_num += 1
                    table_number = (row.get('table_number') or '').strip()
                    capacity = (row.get('capacity') or '').strip()

                    if not table_number or not capacity:
                        print(f"⚠️  Warning: Skipping empty row at line {line_num}")
                        continue

                    if table_number in existing:
                        print(f"⚠️  Warning: Table {table_number} already exists, skipping")
                        continue

                    try:
                        table = ledger.add_table(org_id, table_number, int(capacity))
                    except ValueError:
                        print(f"⚠️  Warning: Capacity '{capacity}' at line {line_num} is not a number, skipping")
                        continue
                    except SeatingError as e:
                        print(f"⚠️  Warning: Line {line_num}: {e.message}, skipping")
                        continue

                    existing.add(table.table_number)
                    added.append(table)

                if added:
                    print(f"\n✅ Successfully imported {len(added)} tables!")
                    for table in added[:5]:
                        print(f"  Table {table.table_number}: {table.capacity} seats")
                    if len(added) > 5:
                        print(f"  ... and {len(added) - 5} more")
                else:
                    print("⚠️  No new tables to import")
                return len(added)

        except FileNotFoundError:
            print(f"❌ Error: File '{filename}' not found")
            print("\nCreate a CSV file with this format:")
            print("table_number,capacity")
            print("T1,4")
            print("T2,2")
            return 0


def show_table_stats(org_id=None):
    """Display current seating statistics"""
    with app.app_context():
        org_id = org_id or app.config['DEFAULT_ORG_ID']
        tables = ledger.list_tables(org_id)
        capacity = sum(t.capacity for t in tables)
        occupied = sum(t.current_occupancy for t in tables)

        print("\n" + "=" * 50)
        print(f"TABLE STATISTICS ({org_id})")
        print("=" * 50)
        print(f"Tables:         {len(tables)}")
        print(f"Total seats:    {capacity}")
        print(f"Seats in use:   {occupied}")
        print(f"Free seats:     {capacity - occupied}")
        print("=" * 50)


def create_sample_csv(filename='tables_sample.csv'):
    """Create a sample CSV file"""
    sample_data = [
        ['table_number', 'capacity'],
        ['1', '2'],
        ['2', '2'],
        ['3', '4'],
        ['4', '4'],
        ['5', '6']
    ]

    with open(filename, 'w', newline='', encoding='utf-8') as file:
        writer = csv.writer(file)
        writer.writerows(sample_data)

    print(f"✅ Created sample file: {filename}")
    print("Edit this file with your real floor plan, then run:")
    print(f"python import_tables.py {filename}")
    return filename


if __name__ == '__main__':
    print("=" * 50)
    print("QUEUE & SEATING - TABLE IMPORT UTILITY")
    print("=" * 50)
    print()

    if len(sys.argv) > 1:
        if sys.argv[1] == '--sample':
            create_sample_csv()
        elif sys.argv[1] == '--stats':
            show_table_stats(sys.argv[2] if len(sys.argv) > 2 else None)
        else:
            filename = sys.argv[1]
            org_id = sys.argv[2] if len(sys.argv) > 2 else None
            print(f"Importing from: {filename}\n")
            if import_tables_from_csv(filename, org_id):
                show_table_stats(org_id)
    else:
        print("Importing from: tables.csv\n")
        if import_tables_from_csv('tables.csv'):
            show_table_stats()
        else:
            print("\n💡 Need help?")
            print("  Create sample: python import_tables.py --sample")
            print("  Show stats:    python import_tables.py --stats [org]")
            print("  Import file:   python import_tables.py your_file.csv [org]")
