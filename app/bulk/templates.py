from typing import Dict, Tuple

# (header, example row) per template name
IMPORT_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "customers": (
        "customer_name,email,phone_primary,phone_secondary",
        "Jane Doe,jane@example.com,5125550100,",
    ),
    "estimates": (
        "estimate_number,customer_name,email,phone_primary,origin_zip,destination_zip,origin_city,"
        "destination_city,requested_pickup_date,requested_pickup_time,lead_source,estimated_total,deposit,"
        "pricing_notes",
        "E-LEG-001,Jane Doe,jane@example.com,5125550100,78701,75001,Austin,Dallas,2026-03-22,09:00,"
        "Referral,250000,25000,Legacy import",
    ),
    "jobs": (
        "job_number,customer_name,email,phone_primary,scheduled_date,pickup_time,status,job_type,origin_zip,"
        "destination_zip,origin_city,destination_city,requested_pickup_date",
        "J-LEG-001,Jane Doe,jane@example.com,5125550100,2026-03-22,09:00,booked,local,78701,75001,Austin,"
        "Dallas,2026-03-22",
    ),
    "storage": (
        "job_number,facility,storage_status,date_in,date_out,next_bill_date,lot_number,location_label,vaults,"
        "pads,items,oversize_items,volume,monthly_rate,storage_balance,move_balance",
        "J-LEG-001,Main Facility,in_storage,2026-03-23,,2026-04-23,LOT-12,Aisle 4,2,1,18,2,120,32900,28000,7000",
    ),
    "combined": (
        "job_number,estimate_number,customer_name,email,phone_primary,phone_secondary,origin_zip,"
        "destination_zip,origin_city,destination_city,origin_state,destination_state,requested_pickup_date,"
        "requested_pickup_time,scheduled_date,pickup_time,status,job_type,lead_source,estimated_total,deposit,"
        "pricing_notes,facility,storage_status,date_in,date_out,next_bill_date,lot_number,location_label,vaults,"
        "pads,items,oversize_items,volume,monthly_rate,storage_balance,move_balance",
        "J-LEG-001,E-LEG-001,Jane Doe,jane@example.com,5125550100,,78701,75001,Austin,Dallas,TX,TX,2026-03-22,"
        "09:00,2026-03-22,09:00,booked,local,Referral,250000,25000,Legacy import,Main Facility,in_storage,"
        "2026-03-23,,2026-04-23,LOT-12,Aisle 4,2,1,18,2,120,32900,28000,7000",
    ),
}


def build_template(name: str) -> Tuple[str, str] | None:
    """Return ``(content, filename)`` for a known template, else None."""
    normalized = name.strip().lower()
    template = IMPORT_TEMPLATES.get(normalized)
    if template is None:
        return None
    header, example = template
    return "\n".join([header, example]), f"{normalized}-template.csv"
