# usage_meter/demo/seed_demo_data.py

from usage_meter.core.reconciler import UsageReconciler
from usage_meter.core.pricing import price_quantity
from usage_meter.storage.models import PhoneNumber, ResourceKind
from usage_meter.storage.repository import get_repository

repository = get_repository()
repository.initialize_schema()

account = repository.create_account("Demo tenant", balance=10_000, api_token="demo-token")
repository.register_number(PhoneNumber(
    number="74951234567",
    account_id=account.id,
    sms_supported=True,
    sms_enabled=True,
))
repository.activate_plan(account.id, ResourceKind.CALL_MINUTES, quota_limit=100)
repository.activate_plan(account.id, ResourceKind.SMS_SEGMENTS, quota_limit=50)

reconciler = UsageReconciler(repository)
for seconds in (45, 360, 6000):  # last call runs past the plan
    minutes = price_quantity(ResourceKind.CALL_MINUTES, seconds)
    result = reconciler.reconcile(account.id, ResourceKind.CALL_MINUTES, minutes)
    print(f"{seconds}s -> {minutes} min: {result.priced}")

print(f"Demo account {account.id} seeded, balance {repository.get_account(account.id).balance}")
