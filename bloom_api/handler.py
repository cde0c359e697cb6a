"""
Lambda handlers for the Bloom Library books API

This module serves as the entry point for all Lambda functions.
It re-exports handlers from their respective modules for Lambda function configuration.

Architecture:
- API Gateway -> books_handler -> DynamoDB (action state) -> async Lambda invoke
- long_running_action_handler -> Parse Server (book records) + S3 (book files) + STS
- API Gateway -> status_handler -> DynamoDB (action state)
- EventBridge (daily) -> book_cleanup_handler -> Parse Server + S3

Handlers:
1. books_handler: /v1/books/{id}:upload-start, :upload-finish and :permissions
2. long_running_action_handler: Runs an upload-start or upload-finish step
3. status_handler: Reports the status of a long-running action
4. book_cleanup_handler: Removes uploads that were started but never finished
"""

# Re-export handlers for Lambda function configuration
# Support both local development (bloom_api.X) and Lambda deployment (X)
try:
    # Lambda deployment (files are in root, not in bloom_api/)
    from handlers.book_handlers import books_handler
    from handlers.cleanup_handlers import book_cleanup_handler
    from handlers.long_running_handlers import long_running_action_handler, status_handler
except ImportError:
    # Local development / testing (with bloom_api package structure)
    from bloom_api.handlers.book_handlers import books_handler
    from bloom_api.handlers.cleanup_handlers import book_cleanup_handler
    from bloom_api.handlers.long_running_handlers import long_running_action_handler, status_handler

# Make handlers available at module level for Lambda
__all__ = [
    "books_handler",
    "long_running_action_handler",
    "status_handler",
    "book_cleanup_handler",
]
