# test_imports.py
import sys
print("Python path:", sys.path)

try:
    import usage_meter
    print("✅ usage_meter imported successfully")
    print("Module location:", list(usage_meter.__path__))
except ImportError as e:
    print("❌ Failed to import usage_meter:", e)

try:
    from usage_meter.core.reconciler import UsageReconciler
    print("✅ UsageReconciler imported successfully")
except ImportError as e:
    print("❌ Failed to import UsageReconciler:", e)

try:
    from usage_meter.api.app import create_app
    print("✅ create_app imported successfully")
except ImportError as e:
    print("❌ Failed to import create_app:", e)
