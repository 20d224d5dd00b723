from rest_framework import serializers

from .renditions import QUALITY_PRESETS, resolve_ladder


class JobSerializer(serializers.Serializer):
    """
    Read-only view of a tracker Job snapshot
    """
    resource_id = serializers.CharField()
    source_key = serializers.CharField()
    destination_prefix = serializers.CharField()
    renditions = serializers.ListField(child=serializers.CharField())
    state = serializers.CharField(source='state.value')
    stage = serializers.SerializerMethodField()
    progress = serializers.IntegerField()
    started_at = serializers.DateTimeField()
    ended_at = serializers.DateTimeField(allow_null=True)
    result = serializers.DictField(allow_null=True)
    failure_reason = serializers.CharField(allow_null=True)

    def get_stage(self, job):
        return job.stage.value if job.stage else None


class JobSubmitSerializer(serializers.Serializer):
    """
    Serializer for incoming encoding requests from the main backend
    """
    resource_id = serializers.CharField(max_length=255)
    source_key = serializers.CharField(max_length=500)
    destination_prefix = serializers.CharField(max_length=500, required=False)
    renditions = serializers.ListField(
        child=serializers.CharField(),
        required=False,
        allow_empty=False,
    )

    def validate_resource_id(self, value):
        if '/' in value:
            raise serializers.ValidationError("resource_id must not contain '/'")
        return value

    def validate_renditions(self, value):
        try:
            return [r.name for r in resolve_ladder(value)]
        except ValueError:
            raise serializers.ValidationError(
                f"Unsupported renditions: {[v for v in value if v not in QUALITY_PRESETS]}. "
                f"Allowed: {sorted(QUALITY_PRESETS)}"
            )
