"""服务层：凭据、镜像构建、镜像发布、基础设施部署、流水线"""
