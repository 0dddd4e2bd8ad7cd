from sqlalchemy import select

from procureflow.db import SessionLocal, engine
from procureflow.models import Base, Counterparty, CounterpartyKind

DEMO_COUNTERPARTIES = [
    (CounterpartyKind.SUPPLIER, 'ABC Pte. Ltd.', None),
    (CounterpartyKind.SUPPLIER, 'Mock Supplies Pte Ltd', None),
    (CounterpartyKind.SUPPLIER, 'Lim Brothers Construction Sdn Bhd', None),
    (CounterpartyKind.SUPPLIER, 'Harbourfront Electrical Works', 1),
    (CounterpartyKind.CUSTOMER, 'Marina Development Corporation', None),
    (CounterpartyKind.CUSTOMER, 'Tanjong Estates Private Limited', 1),
]


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        existing = {
            (row.kind, row.name)
            for row in db.execute(select(Counterparty)).scalars().all()
        }
        for kind, name, project_id in DEMO_COUNTERPARTIES:
            if (kind, name) in existing:
                continue
            db.add(Counterparty(kind=kind, name=name, project_id=project_id, active=True))
        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
