# atlas_ai/demo/seed_demo_data.py

import sys

from atlas_ai.core.query import UserPreferences
from atlas_ai.storage.db import DEFAULT_DB_PATH
from atlas_ai.storage.models import ContentItem
from atlas_ai.storage.repository import AccountRepository, ContentRepository, initialize_schema

DEMO_USER = "demo-student"

DEMO_CONTENT = [
    ContentItem(
        title="Quadratic Equations Revision Notes",
        description="Factorising, completing the square and the quadratic formula",
        content_type="notes",
        exam_board="Edexcel",
        exam_type="GCSE",
        subject="Mathematics",
        topics=["quadratic equations", "algebra"],
        views=42,
    ),
    ContentItem(
        title="Edexcel GCSE Maths Paper 1 (Higher)",
        description="Non-calculator paper with mark scheme",
        content_type="pastPaper",
        exam_board="Edexcel",
        exam_type="GCSE",
        subject="Mathematics",
        topics=["algebra", "geometry", "quadratic equations"],
        views=120,
    ),
    ContentItem(
        title="Cell Biology Notes",
        description="Cell structure, transport and division",
        content_type="notes",
        exam_board="AQA",
        exam_type="GCSE",
        subject="Biology",
        topics=["cells", "mitosis"],
        views=15,
    ),
    ContentItem(
        title="Organic Chemistry Practice Set",
        description="Mechanisms and functional groups",
        content_type="practiceQuestions",
        exam_board="OCR",
        exam_type="A-level",
        subject="Chemistry",
        topics=["organic chemistry", "mechanisms"],
        views=8,
    ),
]


def seed(db_path: str = DEFAULT_DB_PATH) -> None:
    initialize_schema(db_path)

    accounts = AccountRepository(db_path)
    if accounts.get_account(DEMO_USER) is None:
        accounts.create_user(
            DEMO_USER,
            preferences=UserPreferences(exam_type="GCSE", exam_board="Edexcel", subjects=["Mathematics"]),
        )

    content = ContentRepository(db_path)
    for item in DEMO_CONTENT:
        content.add_content(item)


if __name__ == "__main__":
    seed(sys.argv[1] if len(sys.argv) > 1 else DEFAULT_DB_PATH)
    print("Demo user and content inserted")
