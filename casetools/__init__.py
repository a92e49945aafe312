"""
CaseTools — Revenue-Assurance Case Management Backend (v1.0.0)

Architecture:
  casetools/
  ├── config/        — Constants, feature flags, role matrix, vocabularies
  ├── db/            — JSON document store with PostgreSQL upgrade path
  ├── policy/        — Runtime system settings (SLA hours, dedup window, auto-close)
  ├── auth/          — JWT, bcrypt, user store, login lockout, RBAC
  ├── teams/         — Teams, membership, leaders
  ├── notifications/ — In-app notification records
  ├── rules/         — Grafana rule → user/team assignments and assignment strategies
  ├── alerts/        — Alert history
  ├── cases/         — Case lifecycle, SLA, quick actions, bulk ops, metrics
  ├── webhooks/      — Grafana webhook → case pipeline
  ├── grafana/       — Grafana HTTP client
  ├── analytics/     — Overview, trends, team performance, report snapshots
  └── server.py      — FastAPI routing layer

Each module is self-contained with clear imports and no circular dependencies.
"""
