"""
Метрики Prometheus. Отдаются через /metrics (см. server/api.py).
"""

from prometheus_client import Counter, Histogram

MESSAGES_INGESTED = Counter('messages_ingested_total', 'Total number of persisted chat messages')
MESSAGES_DISCARDED = Counter('messages_discarded_total', 'Messages dropped before persistence', ['reason'])
EVENTS_PUBLISHED = Counter('events_published_total', 'Events published to the bus', ['topic'])
EVENTS_HANDLED = Counter('events_handled_total', 'Events handled by consumers', ['topic', 'status'])
SUMMARIZATIONS = Counter('summarizations_total', 'Summarization attempts by result', ['status'])
SUMMARIZATION_DURATION = Histogram('summarization_duration_seconds', 'Duration of one scope summarization')
LLM_REQUEST_DURATION = Histogram('llm_request_duration_seconds', 'Duration of LLM completion calls', ['kind'])
DELIVERIES = Counter('deliveries_total', 'Reply deliveries by outcome', ['outcome'])
DB_QUERY_DURATION = Histogram('db_query_duration_seconds', 'Duration of SQL statements')
DB_SLOW_QUERIES = Counter('db_slow_queries_total', 'SQL statements slower than SLOW_QUERY_THRESHOLD')
