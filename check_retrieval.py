import logging
import sys
import traceback

from sopbot.config import settings
from sopbot.engine.ranker import rank
from sopbot.engine.steps import numbered_steps, parse_steps
from sopbot.errors import RetrievalFailure
from sopbot.services.coda_service import CodaDocumentStore

logging.basicConfig(level=logging.INFO)


def check_retrieval(query: str):
    print(f"\n--- Checking Retrieval for: '{query}' ---")

    try:
        print("1. Fetching SOPs from Coda...")
        store = CodaDocumentStore(
            api_token=settings.coda_api_token,
            doc_id=settings.coda_doc_id,
            table_id=settings.coda_table_id,
            tag_columns=settings.coda_tag_columns_list,
            timeout=settings.http_timeout_seconds,
        )
        corpus = store.fetch_all()

        print("2. Ranking...")
        results = rank(corpus, query, limit=None)

        if not results:
            print("[INFO] No SOP passed the title/tag gate.")
            return

        print(f"[SUCCESS] Found {len(results)} results (the bot uses the top 3):")
        for i, res in enumerate(results):
            doc = res.document
            print(f"\nResult {i+1}:")
            print(f"  Title: {doc.title}")
            print(f"  Score: {res.score:g}")
            print(f"  Status: {doc.status or 'N/A'}")
            print(f"  Tags: {', '.join(doc.tags) or '-'}")
            print(f"  Link: {doc.link}")

        print("\nSteps of the top match:")
        for step in numbered_steps(parse_steps(results[0].document.body)):
            print(f"  {step.header or '(no step markers)'}")

    except RetrievalFailure as e:
        print(f"[ERROR] Error during retrieval check: {e}")
        traceback.print_exc()


if __name__ == "__main__":
    test_query = "how do I offboard someone"
    if len(sys.argv) > 1:
        test_query = " ".join(sys.argv[1:])

    check_retrieval(test_query)
