# Default stock and service price list used when seeding a new clinic.

dental_supplies = [
    # Dental Supplies
    dict(name="Cotton Rolls", category="Dental Supplies", unit_of_measure="pack", unit_cost=45.0, current_quantity=200, reorder_level=40),
    dict(name="Gauze Pads", category="Dental Supplies", unit_of_measure="pack", unit_cost=60.0, current_quantity=150, reorder_level=30),
    dict(name="Disposable Gloves", category="Dental Supplies", unit_of_measure="box", unit_cost=350.0, current_quantity=40, reorder_level=10),
    dict(name="Face Masks", category="Dental Supplies", unit_of_measure="box", unit_cost=250.0, current_quantity=30, reorder_level=8),
    dict(name="Saliva Ejectors", category="Dental Supplies", unit_of_measure="pack", unit_cost=180.0, current_quantity=25, reorder_level=5),
    dict(name="Patient Bibs", category="Dental Supplies", unit_of_measure="pack", unit_cost=220.0, current_quantity=20, reorder_level=5),

    # Anesthetics
    dict(name="Lidocaine 2% Cartridge", category="Anesthetics", unit_of_measure="cartridge", unit_cost=38.0, current_quantity=300, reorder_level=60),
    dict(name="Articaine 4% Cartridge", category="Anesthetics", unit_of_measure="cartridge", unit_cost=55.0, current_quantity=120, reorder_level=30),
    dict(name="Topical Benzocaine Gel", category="Anesthetics", unit_of_measure="tube", unit_cost=140.0, current_quantity=15, reorder_level=4),
    dict(name="Dental Needles 27G", category="Anesthetics", unit_of_measure="box", unit_cost=420.0, current_quantity=12, reorder_level=3),

    # Restorative Materials
    dict(name="Composite Resin A2", category="Restorative Materials", unit_of_measure="syringe", unit_cost=650.0, current_quantity=30, reorder_level=6),
    dict(name="Glass Ionomer Cement", category="Restorative Materials", unit_of_measure="kit", unit_cost=1800.0, current_quantity=8, reorder_level=2),
    dict(name="Bonding Agent", category="Restorative Materials", unit_of_measure="bottle", unit_cost=1200.0, current_quantity=10, reorder_level=2),
    dict(name="Etchant Gel", category="Restorative Materials", unit_of_measure="syringe", unit_cost=160.0, current_quantity=25, reorder_level=5),

    # Endodontic Supplies
    dict(name="K-Files Assorted", category="Endodontic Supplies", unit_of_measure="pack", unit_cost=480.0, current_quantity=20, reorder_level=5),
    dict(name="Gutta Percha Points", category="Endodontic Supplies", unit_of_measure="box", unit_cost=320.0, current_quantity=18, reorder_level=4),
    dict(name="Paper Points", category="Endodontic Supplies", unit_of_measure="box", unit_cost=210.0, current_quantity=18, reorder_level=4),
    dict(name="Sodium Hypochlorite 3%", category="Endodontic Supplies", unit_of_measure="bottle", unit_cost=150.0, current_quantity=12, reorder_level=3),

    # Preventive
    dict(name="Prophy Paste", category="Preventive Supplies", unit_of_measure="jar", unit_cost=380.0, current_quantity=10, reorder_level=2),
    dict(name="Fluoride Varnish", category="Preventive Supplies", unit_of_measure="unit", unit_cost=95.0, current_quantity=60, reorder_level=15),
    dict(name="Pit and Fissure Sealant", category="Preventive Supplies", unit_of_measure="syringe", unit_cost=540.0, current_quantity=8, reorder_level=2),

    # Surgical
    dict(name="Sutures 3-0 Silk", category="Surgical Supplies", unit_of_measure="pack", unit_cost=75.0, current_quantity=50, reorder_level=10),
    dict(name="Hemostatic Sponge", category="Surgical Supplies", unit_of_measure="unit", unit_cost=120.0, current_quantity=30, reorder_level=8),
    dict(name="Scalpel Blades #15", category="Surgical Supplies", unit_of_measure="box", unit_cost=400.0, current_quantity=6, reorder_level=2),

    # Impression
    dict(name="Alginate Impression Material", category="Impression Materials", unit_of_measure="bag", unit_cost=520.0, current_quantity=10, reorder_level=3),
    dict(name="Impression Trays", category="Impression Materials", unit_of_measure="pack", unit_cost=300.0, current_quantity=12, reorder_level=3),
]

dental_services = [
    # name, price, HSN/SAC, GST rate
    dict(name="Consultation", cost=500.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Oral Prophylaxis (Scaling)", cost=1500.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Dental X-Ray (IOPA)", cost=300.0, hsn_sac="999316", gst_rate=18.0),
    dict(name="Composite Filling", cost=2000.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Root Canal Treatment", cost=6500.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Simple Extraction", cost=1200.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Surgical Extraction", cost=4000.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Fluoride Application", cost=800.0, hsn_sac="999312", gst_rate=18.0),
    dict(name="Porcelain Crown", cost=7000.0, hsn_sac="999312", gst_rate=12.0),
    dict(name="Teeth Whitening", cost=8000.0, hsn_sac="999312", gst_rate=18.0),
]

# Typical procedures per category for demo data
procedure_templates = {
    'Diagnostic': ['Comprehensive Oral Exam', 'Periapical Radiograph'],
    'Preventive': ['Oral Prophylaxis', 'Fluoride Varnish Application', 'Sealant Placement'],
    'Restorative': ['Class II Composite Filling', 'GIC Restoration'],
    'Endodontic': ['Root Canal Treatment', 'Pulpotomy'],
    'Oral Surgery': ['Simple Extraction', 'Third Molar Extraction'],
}
