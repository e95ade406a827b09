from apps.core.utils.forms import SchoolScopedModelForm

from .models import SchoolClass


class SchoolClassForm(SchoolScopedModelForm):
    class Meta:
        model = SchoolClass
        fields = ['name', 'stream', 'code', 'display_order', 'is_active']
