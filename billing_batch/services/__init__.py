"""billing_batch.services -- invoice run execution and scheduling."""
