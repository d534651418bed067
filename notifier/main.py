# notifier/main.py
"""
Notifier Service - Event Notification Relay

This service consumes events from three Kafka topics and relays each of them
as a plain-text email over SMTP:

- product_updates: the text of the update, sent to the admin address
- signUp_Update_toUser: a welcome email sent to the new user
- low_stock_alerts: the alert record as JSON, sent to the inventory address
"""

import asyncio

from notifier.service import main


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
