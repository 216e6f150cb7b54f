from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET


@require_GET
def health_view(request):
    return JsonResponse({
        "success": True,
        "status": "OK",
        "timestamp": timezone.now().isoformat(),
    })


def error_404_view(request, exception):
    return JsonResponse({"success": False, "message": "Route not found"}, status=404)


def error_500_view(request):
    # No exception detail here; DEBUG shows Django's own technical page instead
    return JsonResponse({"success": False, "message": "Internal server error"}, status=500)
