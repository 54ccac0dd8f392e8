import billing

SUPPLY = {'name': 'Nitrile Gloves', 'category': 'Dental Supplies', 'unit_cost': 2.5, 'current_quantity': 40}


def test_login_check_session_logout(client, admin):
    response = client.post('/login', json={'email': admin.email.upper(), 'password': 'password123'})
    assert response.status_code == 200
    assert response.get_json()['id'] == admin.id

    assert client.get('/check_session').get_json()['email'] == admin.email

    assert client.delete('/logout').status_code == 204
    assert client.get('/check_session').status_code == 401


def test_login_rejects_bad_password(client, admin):
    response = client.post('/login', json={'email': admin.email, 'password': 'wrong'})
    assert response.status_code == 401
    assert response.get_json()['kind'] == 'unauthorized'


def test_clinic_endpoints_require_a_session(client):
    response = client.get('/inventory')
    assert response.status_code == 401


def test_pending_staff_can_log_in_but_not_work(client, make_user, clinic):
    pending = make_user('Doctor', clinic, approved=False)

    assert client.post('/login', json={'email': pending.email, 'password': 'password123'}).status_code == 200
    response = client.get('/appointments')

    assert response.status_code == 403
    assert response.get_json()['error'] == 'Your account is pending approval'


def test_register_and_request_clinic_access(client, clinic):
    response = client.post('/register', json={
        'first_name': 'Neha', 'last_name': 'Kulkarni', 'email': 'neha@example.com',
        'password': 'longpassword', 'role': 'Nurse', 'clinic_id': clinic.id,
    })
    assert response.status_code == 201
    assert response.get_json()['approval_status'] == 'pending'


def test_create_and_page_inventory(login, admin):
    client = login(admin)
    for index in range(3):
        response = client.post('/inventory', json=dict(SUPPLY, name=f"Gloves {index}"))
        assert response.status_code == 201

    page = client.get('/inventory?limit=2&page=2').get_json()

    assert page['total'] == 3
    assert page['page'] == 2
    assert page['pages'] == 2
    assert [item['name'] for item in page['data']] == ['Gloves 2']


def test_invalid_payload_is_a_400(login, admin):
    response = login(admin).post('/inventory', json=dict(SUPPLY, unit_cost=-1))

    body = response.get_json()
    assert response.status_code == 400
    assert body['kind'] == 'validation_error'
    assert 'unit_cost' in body['details']


def test_inventory_transaction_endpoint(login, admin, make_item):
    item = make_item(current_quantity=10)
    client = login(admin)

    response = client.post('/inventory/transactions', json={
        'item_id': item.id, 'transaction_type': 'Usage', 'quantity': -4, 'notes': 'Ward use',
    })

    assert response.status_code == 201
    assert response.get_json()['item']['current_quantity'] == 6
    ledger = client.get(f'/inventory/{item.id}/ledger').get_json()
    assert ledger['consistent'] is True


def test_other_clinics_items_are_off_limits(login, make_clinic, make_user, make_item):
    item = make_item()
    outsider = make_user('Admin', make_clinic())

    response = login(outsider).get(f'/inventory/{item.id}')

    assert response.status_code in (403, 404)


def test_role_without_permission_is_forbidden(login, make_user, clinic, patient):
    nurse = make_user('Nurse', clinic)
    response = login(nurse).post('/invoices', json={
        'patient_id': patient.id, 'services': [{'name': 'Scaling', 'cost': 500}],
    })
    assert response.status_code == 403
    assert response.get_json()['kind'] == 'forbidden'


def test_procedure_with_insufficient_stock(login, admin, doctor, patient, make_item):
    item = make_item(name='Implant Fixture', current_quantity=1)

    response = login(admin).post('/procedures', json={
        'name': 'Implant Placement', 'category': 'Implant',
        'patient_id': patient.id, 'dentist_id': doctor.id,
        'inventory_items': [{'item_id': item.id, 'quantity': 2}],
    })

    body = response.get_json()
    assert response.status_code == 400
    assert body['kind'] == 'insufficient_stock'
    assert body['details'] == {'item': 'Implant Fixture', 'available': 1, 'requested': 2}


def test_payment_flow_and_receipt_pdf(login, admin, admin_principal, patient):
    invoice = billing.create_invoice(admin_principal, {
        'patient_id': patient.id, 'services': [{'name': 'Scaling', 'cost': 1000, 'gst_rate': 18}],
    })
    client = login(admin)

    response = client.post(f'/invoices/{invoice.id}/payments', json={'amount': 1180, 'payment_method': 'Cash'})
    body = response.get_json()

    assert response.status_code == 201
    assert body['invoice']['payment_status'] == 'Paid'
    assert body['receipt']['payment_id'] == body['payment']['id']

    overpay = client.post(f'/invoices/{invoice.id}/payments', json={'amount': 1, 'payment_method': 'Cash'})
    assert overpay.status_code == 400

    pdf = client.get(f"/payments/{body['payment']['id']}/receipt/pdf")
    assert pdf.status_code == 200
    assert pdf.headers['Content-Type'] == 'application/pdf'
    assert pdf.data.startswith(b'%PDF')


def test_patient_books_own_appointment(login, make_user, make_patient, clinic, doctor):
    user = make_user('Patient', clinic)
    own = make_patient(clinic, user=user, email='self@example.com')
    client = login(user)

    response = client.post('/appointments', json={
        'patient_id': own.id, 'doctor_id': doctor.id, 'reason': 'Toothache',
        'start_time': '2030-03-04T09:00:00', 'end_time': '2030-03-04T09:30:00',
    })

    assert response.status_code == 201
    assert client.get('/appointments').get_json()['total'] == 1
