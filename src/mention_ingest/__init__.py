"""
Mention ingestion and token attribution for scraped social-video batches.

Entry point: mention_ingest.pipeline.ingest_batch()
"""
