"""
Seed script to generate synthetic supplier submissions for demo purposes.

Runs the real pipeline (rule-based extraction, routing, recovery queue) on
generated WhatsApp text messages so every dashboard view has data.
"""
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from faker import Faker
from sqlalchemy.orm import Session

from supplier_intake.config import settings
from supplier_intake.database import SessionLocal, engine, Base
from supplier_intake.errors import PipelineError
from supplier_intake.schemas.webhook import InboundMessage
from supplier_intake.services.extraction_service import RuleBasedExtractor
from supplier_intake.services.pipeline import create_pipeline
from supplier_intake.utils.clock import utcnow

fake = Faker()

PHONES = [
    ("Apple", "iPhone 12 Pro", "smartphone"),
    ("Apple", "iPhone 11", "smartphone"),
    ("Samsung", "Galaxy S21", "smartphone"),
    ("Samsung", "Galaxy A52", "smartphone"),
    ("Apple", "MacBook Air M1", "laptop"),
    ("HP", "EliteBook 840 G5", "laptop"),
    ("Dell", "Latitude 7490", "laptop"),
    ("Apple", "iPad Air", "tablet"),
]
CONDITIONS = ("neuf", "reconditionné", "occasion", "new", "used")


def fake_listing() -> str:
    """One supplier message listing one to three products"""
    lines = []
    for _ in range(fake.random_int(min=1, max=3)):
        _, model, _ = fake.random_element(elements=PHONES)
        storage = fake.random_element(elements=("64GB", "128GB", "256GB"))
        condition = fake.random_element(elements=CONDITIONS)
        price = fake.random_int(min=45, max=650) * 1000
        line = f"{model} {storage} {condition}"
        if condition in ("reconditionné", "used", "occasion") and fake.boolean():
            line += f" grade {fake.random_element(elements=('A', 'B', 'C'))}"
        line += f"\nPrix: {price:,} FCFA".replace(",", " ")
        if fake.boolean(chance_of_getting_true=40):
            line += f"\nQuantité: {fake.random_int(min=1, max=20)}"
        lines.append(line)
    return "\n\n".join(lines)


async def create_submissions(db: Session, count: int = 25) -> int:
    """Ingest and process synthetic text messages"""
    pipeline = create_pipeline(settings=settings, extractor=RuleBasedExtractor(settings.default_currency))
    suppliers = [f"22507{fake.numerify(text='#######')}" for _ in range(6)]

    processed = 0
    for i in range(count):
        message = InboundMessage(
            source_message_id=f"wamid.SEED{fake.unique.numerify(text='##########')}",
            sender=fake.random_element(elements=suppliers),
            message_type="text",
            text=fake_listing(),
            timestamp=utcnow() - timedelta(hours=fake.random_int(min=0, max=24 * 7)),
        )
        try:
            submission = await pipeline.ingestion.receive(db, message)
            await pipeline.worker.process(db, submission.id)
            processed += 1
        except PipelineError as e:
            print(f"  Skipped message {i + 1}: {e.message}")
    return processed


def main():
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        print("Seeding supplier submissions...")
        processed = asyncio.run(create_submissions(db))
        print(f"Created {processed} submissions")
        print("\nSeed data created successfully!")
    except Exception as e:
        print(f"Error seeding data: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
