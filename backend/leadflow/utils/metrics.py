# /leadflow/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# All Prometheus metrics used by the service live here.

# Flow engine
flow_events_counter = Counter('flow_events_total', 'Flow events handled', ['event_type', 'status'])
flow_steps_counter = Counter('flow_steps_total', 'Node steps executed', ['node_type', 'outcome'])
flow_executions_finished_counter = Counter('flow_executions_finished_total', 'Executions reaching a terminal status', ['status'])
flow_scheduler_due_gauge = Gauge('flow_scheduler_due', 'Executions found due on the last scheduler tick')
flow_step_duration_histogram = Histogram('flow_step_duration_seconds', 'Time spent executing one node step', ['node_type'])

# HTTP
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])

# Infrastructure
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
outbound_messages_counter = Counter('whatsapp_outbound_messages_total', 'Outbound WhatsApp messages', ['status', 'message_type'])

# Security
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
tenant_violations_counter = Counter('tenant_isolation_violations_total', 'Events rejected for crossing tenant boundaries', ['event_type'])
