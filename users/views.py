import logging

from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated, AllowAny
from rest_framework.response import Response
from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.tokens import RefreshToken

from .serializers import UserSerializer, StudentSerializer, LoginSerializer, LogoutSerializer
from .services import AuthService

logger = logging.getLogger(__name__)


class AuthViewSet(viewsets.GenericViewSet):
    """Authentication endpoints"""
    permission_classes = [AllowAny]
    serializer_class = UserSerializer

    def get_permissions(self):
        if self.action in ('logout', 'me'):
            return [IsAuthenticated()]
        return [AllowAny()]

    @action(detail=False, methods=['post'])
    def login(self, request):
        """Exchange email and password for a JWT pair"""
        serializer = LoginSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning(f"❌ Login failed for {request.data.get('email')}")
            return Response(
                {'error': 'Invalid login credentials', 'fields': serializer.errors},
                status=status.HTTP_400_BAD_REQUEST
            )

        user = serializer.validated_data['user']
        refresh = RefreshToken.for_user(user)

        profile_data = None
        if user.role == 'student' and hasattr(user, 'student_profile'):
            profile_data = StudentSerializer(user.student_profile).data

        logger.info(f"✅ {user.email} logged in")
        return Response({
            'access': str(refresh.access_token),
            'refresh': str(refresh),
            'user': UserSerializer(user).data,
            'profile': profile_data
        })

    @action(detail=False, methods=['post'])
    def logout(self, request):
        """Revoke the current access token and blacklist the refresh token"""
        serializer = LogoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        raw_token = None
        expires_at = None
        header = JWTAuthentication().get_header(request)
        if header is not None and request.auth is not None:
            raw_token = JWTAuthentication().get_raw_token(header)
            expires_at = request.auth['exp']
            if isinstance(raw_token, bytes):
                raw_token = raw_token.decode('utf-8')

        AuthService.logout(
            request.user,
            raw_token,
            expires_at,
            refresh_token=serializer.validated_data.get('refresh') or None
        )
        return Response({'message': 'Logged out successfully'})

    @action(detail=False, methods=['get'])
    def me(self, request):
        """Current user with student profile when there is one"""
        user = request.user
        profile_data = None
        if hasattr(user, 'student_profile'):
            profile_data = StudentSerializer(user.student_profile).data
        return Response({
            'user': UserSerializer(user).data,
            'profile': profile_data
        })
