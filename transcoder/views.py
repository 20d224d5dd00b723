from rest_framework import viewsets, status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
import logging

from .errors import AlreadyInProgress, JobNotFound
from .runtime import default_tracker
from .serializers import JobSerializer, JobSubmitSerializer

logger = logging.getLogger(__name__)


class TranscodeJobViewSet(viewsets.ViewSet):
    """
    Submit encodings and poll their in-memory status
    """
    permission_classes = [AllowAny]
    authentication_classes = []
    lookup_field = 'resource_id'
    lookup_value_regex = '[^/]+'

    def list(self, request):
        """
        Jobs that are still processing
        """
        jobs = default_tracker().list_active()
        return Response(JobSerializer(jobs, many=True).data)

    def create(self, request):
        """
        Start encoding an already uploaded video
        """
        serializer = JobSubmitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            job = default_tracker().submit(
                data['resource_id'],
                data['source_key'],
                destination_prefix=data.get('destination_prefix'),
                renditions=data.get('renditions'),
            )
        except AlreadyInProgress as e:
            return Response({'error': str(e)}, status=status.HTTP_409_CONFLICT)

        logger.info(f"Encoding job accepted for video {job.resource_id}")
        return Response(JobSerializer(job).data, status=status.HTTP_202_ACCEPTED)

    def retrieve(self, request, resource_id=None):
        try:
            job = default_tracker().status(resource_id)
        except JobNotFound:
            return Response({'error': 'Job not found'}, status=status.HTTP_404_NOT_FOUND)
        return Response(JobSerializer(job).data)
