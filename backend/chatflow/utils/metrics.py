# /chatflow/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# This file defines all Prometheus metrics used for engine monitoring.
# Centralizing them here makes them easy to find and manage.

# Execution Metrics
executions_started_counter = Counter('workflow_executions_started_total', 'Executions started', ['flow_id', 'origin'])
executions_finished_counter = Counter('workflow_executions_finished_total', 'Executions reaching a terminal state', ['flow_id', 'status'])
waiting_executions_gauge = Gauge('workflow_waiting_executions', 'Executions currently suspended on a wait')
resume_counter = Counter('workflow_resumes_total', 'Inbound event resume attempts', ['event_kind', 'outcome'])

# Node Metrics
node_executions_counter = Counter('workflow_node_executions_total', 'Node executions', ['node_type', 'status'])
node_duration_histogram = Histogram('workflow_node_duration_seconds', 'Node execution time in seconds', ['node_type'])

# Recovery Metrics
recovery_actions_counter = Counter('workflow_recovery_actions_total', 'Recovery decisions taken', ['category', 'action'])
handler_retries_counter = Counter('workflow_handler_retries_total', 'Transient handler retries', ['node_type'])
wait_timeouts_counter = Counter('workflow_wait_timeouts_total', 'Expired waits handled by the sweep', ['wait_type', 'outcome'])

# Infrastructure Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
transport_messages_counter = Counter('transport_messages_total', 'Outbound chat messages', ['status'])
queue_events_counter = Counter('queue_events_total', 'Inbound events consumed from the queue', ['status'])
cache_operations_counter = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
