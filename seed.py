from random import choice, randint, sample
from datetime import timedelta

from faker import Faker
import phonenumbers

# Local imports
from app import create_app
from models import db, Clinic, User, genders, payment_methods, utcnow
from permissions import Principal, Role
from catalog import dental_supplies, dental_services, procedure_templates
import billing
import inventory
import patients
import procedures
import scheduling

fake = Faker()


def indian_phone():
    local_number = f"9{randint(100_000_000, 999_999_999)}"
    parsed_phone = phonenumbers.parse(local_number, "IN")
    return phonenumbers.format_number(parsed_phone, phonenumbers.PhoneNumberFormat.E164)


def create_user(role, clinic, email=None, password='password123'):
    """Creates an approved fake user with the given role."""
    first_name = fake.first_name()
    last_name = fake.last_name()
    user = User(
        clinic_id=clinic.id,
        first_name=first_name,
        last_name=last_name,
        email=email or fake.unique.email(),
        role=role,
        phone_number=indian_phone(),
        is_approved=True,
        approval_status='approved',
        is_email_verified=True,
    )
    user.password = password  # triggers the @password.setter
    return user


def patient_attrs():
    first_name = fake.first_name()
    last_name = fake.last_name()
    return dict(
        first_name=first_name,
        last_name=last_name,
        gender=choice(genders),
        dob=fake.date_of_birth(minimum_age=3, maximum_age=85),
        phone_number=indian_phone(),
        email=f"{first_name.lower()}.{last_name.lower()}{randint(1, 999)}@example.com",
    )


def seed_inventory(principal):
    today = utcnow().date()
    items = []
    for supply in dental_supplies:
        attrs = dict(
            supply,
            supplier_name=fake.company(),
            supplier_contact=indian_phone(),
            location=choice(['Store Room', 'Operatory 1', 'Operatory 2', 'Sterilisation']),
            expiry_date=today + timedelta(days=randint(15, 720)),
        )
        items.append(inventory.create_item(principal, attrs))
    print(f"✅ Seeded {len(items)} inventory items.")
    return items


def seed_appointments(principal, doctors, patient_list, days=3):
    count = 0
    today = utcnow().date()
    for offset in range(days):
        day = today + timedelta(days=offset + 1)
        for doctor in doctors:
            slots = scheduling.available_slots(principal, doctor.id, day)['slots']
            for slot in sample(slots, min(3, len(slots))):
                scheduling.create_appointment(principal, dict(
                    patient_id=choice(patient_list).id,
                    doctor_id=doctor.id,
                    start_time=slot['start_time'],
                    end_time=slot['end_time'],
                    reason=fake.sentence(nb_words=5),
                    service_type=choice(dental_services)['name'],
                ))
                count += 1
    print(f"✅ Seeded {count} appointments.")


def seed_procedures(principal, doctors, patient_list, items, count=12):
    for _ in range(count):
        category = choice(list(procedure_templates))
        lines = [{'item_id': item.id, 'quantity': randint(1, 2)} for item in sample(items, 3)]
        procedures.create_procedure(principal, dict(
            name=choice(procedure_templates[category]),
            category=category,
            patient_id=choice(patient_list).id,
            dentist_id=choice(doctors).id,
            date=utcnow() - timedelta(days=randint(0, 60)),
            duration=choice([30, 45, 60, 90]),
            status='Completed',
            inventory_items=lines,
        ))
    print(f"✅ Seeded {count} dental procedures.")


def seed_invoices(principal, doctors, patient_list, count=10):
    paid = 0
    for _ in range(count):
        services = [
            dict(service, quantity=1) for service in sample(dental_services, randint(1, 3))
        ]
        invoice = billing.create_invoice(principal, dict(
            patient_id=choice(patient_list).id,
            doctor_id=choice(doctors).id,
            services=services,
            discount=choice([0, 0, 5, 10]),
            is_intra_state=choice([True, True, False]),
        ))
        option = randint(0, 2)
        if option:
            amount = invoice.total if option == 2 else round(invoice.total / 2, 2)
            billing.process_payment(principal, invoice.id, dict(
                amount=amount,
                payment_method=choice(payment_methods),
                transaction_id=fake.uuid4()[:12].upper(),
            ))
            paid += 1
    print(f"✅ Seeded {count} invoices ({paid} with payments).")


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        print("🔄 Dropping and recreating tables...")
        db.drop_all()
        db.create_all()

        print("🌱 Seeding clinic and staff...")
        clinic = Clinic(
            name='Smile Dental Care',
            tenant_id='smile-dental',
            email='hello@smiledental.example.com',
            gst_number='27AAPFU0939F1ZV',
            timezone=app.config['CLINIC_TIMEZONE'],
            working_hours_start='09:00',
            working_hours_end='18:00',
        )
        db.session.add(clinic)
        db.session.commit()

        admin = create_user('Admin', clinic, email='admin@smiledental.example.com', password='admin1234')
        doctors = [create_user('Doctor', clinic) for _ in range(3)]
        others = [create_user(role, clinic) for role in ('Receptionist', 'Nurse', 'Pharmacist')]
        db.session.add_all([admin, *doctors, *others])
        db.session.commit()
        print(f"✅ Seeded {len(doctors) + len(others) + 1} users.")

        principal = Principal(actor_id=admin.id, clinic_id=clinic.id, role=Role.ADMIN)

        print("🌱 Seeding patients...")
        patient_list = [patients.create_patient(principal, patient_attrs()) for _ in range(20)]
        print(f"✅ Seeded {len(patient_list)} patients.")

        items = seed_inventory(principal)
        seed_procedures(principal, doctors, patient_list, items)
        seed_appointments(principal, doctors, patient_list)
        seed_invoices(principal, doctors, patient_list)

        billing.add_bank_account(principal, dict(
            bank_name='State Bank of India',
            account_holder=clinic.name,
            account_number=str(randint(10**10, 10**11 - 1)),
            ifsc_code='SBIN0001234',
        ))

        print("🎉 Done seeding!")
