"""One-time bootstrap script to create an ADMIN user.

Usage:
  python scripts/create_admin.py --username admin --email admin@example.com --password Secret123 --vendor "Main WH"
Or provide via env: ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_VENDOR
"""
import os
import argparse
from getpass import getpass

from warehouse_core.app.db import SessionLocal, create_db_and_tables
from warehouse_core.app.security import get_password_hash, PasswordPolicy
from warehouse_core.app import models


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--username')
    parser.add_argument('--email')
    parser.add_argument('--password')
    parser.add_argument('--vendor', help='warehouse the admin works from')
    args = parser.parse_args()

    username = args.username or os.getenv('ADMIN_USERNAME')
    email = args.email or os.getenv('ADMIN_EMAIL')
    password = args.password or os.getenv('ADMIN_PASSWORD')
    vendor = args.vendor or os.getenv('ADMIN_VENDOR')
    if not username:
        username = input('Username: ').strip()
    if not email:
        email = input('Email: ').strip()
    if not password:
        password = getpass('Password: ')

    ok, errors = PasswordPolicy.validate(password)
    if not ok:
        raise SystemExit('Password rejected: ' + '; '.join(errors))

    create_db_and_tables()
    db = SessionLocal()
    try:
        existing = db.query(models.User).filter(models.User.username == username).first()
        if existing:
            print('User already exists:', username)
            return
        user = models.User(
            username=username,
            email=email,
            password_hash=get_password_hash(password),
            first_name='Admin',
            initials=username[:2].upper(),
            vendor=vendor,
            role=models.UserRole.ADMIN.value,
        )
        db.add(user)
        db.commit()
        print('Created ADMIN user:', username)
    finally:
        db.close()


if __name__ == '__main__':
    main()
