# Routes package init
"""
Shutterbook Notifications — API Routes Package
================================================

Route Inventory:
    - notifications.py: /api/notifications          (list, create)
                        /api/notifications/unread-count
                        /api/notifications/mark-all-read
                        /api/notifications/work-completed
                        /api/notifications/{id}[/read]  (read state, delete)
    - stream.py:        /api/notifications/stream   (event stream)
    - health.py:        /health

Routes stay thin: authenticate, call a service, shape the response.
"""
