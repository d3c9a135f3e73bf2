"""
Database Initialization Script
Run this script to create all database tables and seed development data
"""
import os
import sys
from app import create_app
from models import (
    db, Masjid, MasjidAdmin, MasjidAdminRole, PrayerName, ScheduleTemplate, User, UserRole
)
from utils.permissions import issue_access_token

DEV_TEMPLATE = {
    PrayerName.FAJR: ('05:10:00', '05:30:00'),
    PrayerName.DHUHR: ('13:15:00', '13:30:00'),
    PrayerName.ASR: ('16:45:00', '17:00:00'),
    PrayerName.MAGHRIB: ('18:20:00', '18:25:00'),
    PrayerName.ISHA: ('19:45:00', '20:00:00'),
}


def init_database():
    """Initialize database with tables and seed data"""

    app = create_app()

    with app.app_context():
        # Drop all tables (use with caution in production!)
        print("Dropping existing tables...")
        db.drop_all()

        # Create all tables
        print("Creating database tables...")
        db.create_all()

        print("Creating default super admin...")
        admin = User(email='admin@adhan-relay.local', name='Administrator', role=UserRole.SUPER_ADMIN)
        db.session.add(admin)

        # Create sample data for testing (optional)
        if os.getenv('FLASK_ENV', 'development') == 'development':
            print("Adding sample masjid and schedule template for development...")

            masjid = Masjid(
                name='Masjid Al-Noor',
                slug='masjid-al-noor',
                timezone=app.config['DEFAULT_TIMEZONE'],
                is_approved=True
            )
            db.session.add(masjid)
            db.session.flush()
            db.session.add(MasjidAdmin(masjid_id=masjid.id, user_id=admin.id, role=MasjidAdminRole.MANAGER))

            for prayer, (adhan, iqamah) in DEV_TEMPLATE.items():
                db.session.add(ScheduleTemplate(
                    masjid_id=masjid.id,
                    prayer_name=prayer,
                    adhan_time_local=adhan,
                    iqamah_time_local=iqamah
                ))

        # Commit all changes
        db.session.commit()

        print("\n" + "="*50)
        print("Database initialized successfully!")
        print("="*50)
        print(f"\nAdmin user: {admin.email} ({admin.id})")
        print(f"Access token: {issue_access_token(admin.id)}")
        print("\nIMPORTANT: Tokens are signed with SECRET_KEY; set a real one in production!")
        print("="*50 + "\n")


if __name__ == '__main__':
    confirm = input("This will delete all existing data. Continue? (yes/no): ")
    if confirm.lower() == 'yes':
        init_database()
    else:
        print("Database initialization cancelled.")
        sys.exit(0)
